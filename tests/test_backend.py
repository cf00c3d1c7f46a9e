import asyncio
from types import SimpleNamespace
from unittest.mock import ANY, AsyncMock, MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from app.chat.errors import Conflict, NetworkTimeout, ProcedureMissing, ServerError
from app.chat.realtime import insert_filter
from app.core.backend import (
    Filter,
    Order,
    SupabaseBackend,
    extract_record,
    translate_api_error,
)


CHAINED = ("select", "eq", "neq", "lt", "gt", "in_", "is_", "order", "limit", "insert", "update", "upsert")


def make_client(data=None, error=None):
    client = MagicMock()
    builder = MagicMock()
    for name in CHAINED:
        getattr(builder, name).return_value = builder
    builder.execute = AsyncMock(return_value=SimpleNamespace(data=data), side_effect=error)
    client.table.return_value = builder
    client.rpc.return_value = builder
    return client, builder


@pytest.mark.asyncio
class TestSupabaseBackend:

    async def test_query_builds_request(self):
        client, builder = make_client(data=[{"id": "m1"}])
        backend = SupabaseBackend(client)

        rows = await backend.query(
            "messages",
            select="id",
            filters=[
                Filter("conversation_id", "eq", "c1"),
                Filter("created_at", "lt", "2025-06-01T09:00:00+00:00"),
                Filter("id", "in", ("a", "b")),
                Filter("read_at", "is", None),
            ],
            order=[Order("created_at", desc=True)],
            limit=50,
        )

        assert rows == [{"id": "m1"}]
        client.table.assert_called_once_with("messages")
        builder.select.assert_called_once_with("id")
        builder.eq.assert_called_once_with("conversation_id", "c1")
        builder.lt.assert_called_once_with("created_at", "2025-06-01T09:00:00+00:00")
        builder.in_.assert_called_once_with("id", ["a", "b"])
        builder.is_.assert_called_once_with("read_at", "null")
        builder.order.assert_called_once_with("created_at", desc=True, nullsfirst=None)
        builder.limit.assert_called_once_with(50)

    async def test_order_nulls_last(self):
        client, builder = make_client(data=[])

        await SupabaseBackend(client).query(
            "conversations", order=[Order("last_message_at", desc=True, nulls_first=False)], limit=2
        )

        builder.order.assert_called_once_with("last_message_at", desc=True, nullsfirst=False)
        builder.limit.assert_called_once_with(2)

    async def test_aclose_releases_postgrest_session(self):
        client, _ = make_client()
        client.postgrest.aclose = AsyncMock()

        await SupabaseBackend(client).aclose()

        client.postgrest.aclose.assert_awaited_once()

    async def test_empty_data_is_empty_list(self):
        client, _ = make_client(data=None)
        assert await SupabaseBackend(client).query("messages") == []

    async def test_missing_procedure(self):
        client, _ = make_client(
            error=APIError({"code": "PGRST202", "message": "Could not find the function public.mark_conversation_read"})
        )

        with pytest.raises(ProcedureMissing):
            await SupabaseBackend(client).call("mark_conversation_read", {"conversation_id": "c1"})
        client.rpc.assert_called_once_with("mark_conversation_read", {"conversation_id": "c1"})

    async def test_unique_violation_is_conflict(self):
        client, builder = make_client(error=APIError({"code": "23505", "message": "duplicate key"}))

        with pytest.raises(Conflict):
            await SupabaseBackend(client).mutate(
                "conversations", "upsert", {"customer_id": "c", "business_id": "b"},
                on_conflict="customer_id,business_id",
            )
        builder.upsert.assert_called_once_with(
            {"customer_id": "c", "business_id": "b"}, on_conflict="customer_id,business_id"
        )

    async def test_transport_errors(self):
        client, _ = make_client(error=httpx.ReadTimeout("read timed out"))
        with pytest.raises(NetworkTimeout):
            await SupabaseBackend(client).query("messages")

        client, _ = make_client(error=httpx.ConnectError("connection refused"))
        with pytest.raises(ServerError):
            await SupabaseBackend(client).query("messages")

    async def test_slow_request_times_out(self):
        client, builder = make_client()
        builder.execute = lambda: asyncio.sleep(1)

        with pytest.raises(NetworkTimeout):
            await SupabaseBackend(client, timeout=0.01).query("messages")

    async def test_update_requires_filters(self):
        client, _ = make_client()
        backend = SupabaseBackend(client)

        with pytest.raises(ValueError):
            await backend.mutate("messages", "update", {"read_at": "now"})
        with pytest.raises(ValueError):
            await backend.mutate("messages", "delete")

    async def test_update_applies_filters(self):
        client, builder = make_client(data=[{"id": "c1"}])

        rows = await SupabaseBackend(client).mutate(
            "conversations", "update", {"customer_unread_count": 0},
            filters=[Filter("id", "eq", "c1")],
        )

        assert rows == [{"id": "c1"}]
        builder.update.assert_called_once_with({"customer_unread_count": 0})
        builder.eq.assert_called_once_with("id", "c1")

    async def test_subscribe_delivers_records(self):
        client = MagicMock()
        channel = MagicMock()
        channel.subscribe = AsyncMock()
        client.channel.return_value = channel
        client.remove_channel = AsyncMock()
        received = []

        subscription = await SupabaseBackend(client).subscribe(
            "messages-c1", insert_filter("c1"), received.append
        )

        client.channel.assert_called_once_with("messages-c1")
        channel.on_postgres_changes.assert_called_once_with(
            "INSERT", callback=ANY, table="messages", schema="public", filter="conversation_id=eq.c1"
        )
        callback = channel.on_postgres_changes.call_args.kwargs["callback"]
        callback({"data": {"record": {"id": "m1"}}})
        callback({"data": {"type": "INSERT"}})
        assert received == [{"id": "m1"}]

        await subscription.close()
        await subscription.close()
        client.remove_channel.assert_awaited_once_with(channel)


class TestHelpers:

    def test_translate_api_error(self):
        assert isinstance(
            translate_api_error(APIError({"code": "42883", "message": "function does not exist"})),
            ProcedureMissing,
        )
        assert isinstance(
            translate_api_error(
                APIError({"code": "PGRST000", "message": "Could not find the function public.unread_total"})
            ),
            ProcedureMissing,
        )
        assert isinstance(translate_api_error(APIError({"code": "23505", "message": "dup"})), Conflict)
        error = translate_api_error(APIError({"code": "42501", "message": "permission denied"}))
        assert isinstance(error, ServerError)
        assert error.code == "42501"

    def test_extract_record(self):
        assert extract_record({"data": {"record": {"id": 1}}}) == {"id": 1}
        assert extract_record({"new": {"id": 2}}) == {"id": 2}
        assert extract_record({"record": {"id": 3}}) == {"id": 3}
        assert extract_record({"data": {}}) is None
        assert extract_record("nonsense") is None

    def test_filter_rejects_unknown_ops(self):
        with pytest.raises(ValueError):
            Filter("id", "like", "%x%")
