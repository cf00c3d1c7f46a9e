from datetime import datetime, timezone

import pytest

from app.chat.errors import LoadError, NetworkTimeout, ServerError
from app.chat.pagination import MessagePager, format_cursor, oldest_cursor

from tests.fakes import BUSINESS_ID, CUSTOMER_ID


@pytest.mark.asyncio
class TestMessagePager:

    async def test_newest_page_in_chronological_order(self, backend, conversation):
        """
        Behavior:
            - 60 stored messages, page size 50.
            - The first page is the 50 newest, oldest first.
        """
        backend.seed_messages(conversation["id"], CUSTOMER_ID, BUSINESS_ID, 60)
        pager = MessagePager(backend)

        page = await pager.fetch_page(conversation["id"])

        assert len(page) == 50
        assert page[0].id == "conv-x-m010"
        assert page[-1].id == "conv-x-m059"
        assert [m.created_at for m in page] == sorted(m.created_at for m in page)
        assert pager.has_more(page)

    async def test_cursor_returns_strictly_older(self, backend, conversation):
        backend.seed_messages(conversation["id"], CUSTOMER_ID, BUSINESS_ID, 60)
        pager = MessagePager(backend)
        newest = await pager.fetch_page(conversation["id"])

        older = await pager.fetch_page(conversation["id"], before=oldest_cursor(newest))

        assert [m.id for m in older] == [f"conv-x-m{i:03d}" for i in range(10)]
        assert not pager.has_more(older)
        assert not {m.id for m in older} & {m.id for m in newest}

    async def test_string_cursor(self, backend, conversation):
        rows = backend.seed_messages(conversation["id"], CUSTOMER_ID, BUSINESS_ID, 5)
        pager = MessagePager(backend)

        page = await pager.fetch_page(conversation["id"], before=rows[2]["created_at"])

        assert [m.id for m in page] == ["conv-x-m000", "conv-x-m001"]

    async def test_limit_is_capped_at_page_size(self, backend, conversation):
        backend.seed_messages(conversation["id"], CUSTOMER_ID, BUSINESS_ID, 20)
        pager = MessagePager(backend, page_size=10)

        assert len(await pager.fetch_page(conversation["id"], limit=500)) == 10
        assert len(await pager.fetch_page(conversation["id"], limit=3)) == 3

    async def test_empty_conversation(self, backend, conversation):
        pager = MessagePager(backend)

        page = await pager.fetch_page(conversation["id"])

        assert page == []
        assert not pager.has_more(page)
        assert oldest_cursor(page) is None

    async def test_backend_failure_becomes_load_error(self, backend, conversation):
        backend.fail("query:messages", ServerError("connection reset"))

        with pytest.raises(LoadError):
            await MessagePager(backend).fetch_page(conversation["id"])

    async def test_timeout_is_kept(self, backend, conversation):
        backend.fail("query:messages", NetworkTimeout())

        with pytest.raises(NetworkTimeout):
            await MessagePager(backend).fetch_page(conversation["id"])


def test_format_cursor():
    stamp = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)
    assert format_cursor(stamp) == "2025-06-01T09:00:00+00:00"
    assert format_cursor("2025-06-01T09:00:00Z") == "2025-06-01T09:00:00Z"
