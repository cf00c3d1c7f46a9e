from app.chat.models import (
    SCHEMA_STATEMENTS,
    conversations_sql,
    get_or_create_conversation_sql,
    mark_conversation_read_sql,
    unread_total_sql,
)
from app.chat.receipts import MARK_READ_PROCEDURE, UNREAD_TOTAL_PROCEDURE
from app.chat.service import GET_OR_CREATE_PROCEDURE


def test_procedures_match_client_names():
    script = "\n".join(SCHEMA_STATEMENTS)

    for procedure in (GET_OR_CREATE_PROCEDURE, MARK_READ_PROCEDURE, UNREAD_TOTAL_PROCEDURE):
        assert f"FUNCTION public.{procedure}(" in script


def test_one_conversation_per_pair():
    assert "UNIQUE (customer_id, business_id)" in conversations_sql
    assert "ON CONFLICT (customer_id, business_id)" in get_or_create_conversation_sql


def test_counters_never_negative():
    assert "customer_unread_count >= 0" in conversations_sql
    assert "business_unread_count >= 0" in conversations_sql


def test_mark_read_is_scoped_to_caller():
    assert "auth.uid()" in mark_conversation_read_sql
    assert "read_at IS NULL" in mark_conversation_read_sql


def test_unread_total_only_for_caller():
    assert "unread_total.account_id = auth.uid()" in unread_total_sql


def test_get_or_create_requires_caller_to_be_a_party():
    guard, _, insert = get_or_create_conversation_sql.partition("INSERT INTO conversations")

    assert "auth.uid() NOT IN" in guard
    assert "RAISE EXCEPTION" in guard
    assert insert
