"""
Backend capability used by the messaging core.

The core never touches the Supabase client directly. It talks to a
`BackendClient` exposing four operations:

 - query(table, ...)       read rows with filters/order/limit
 - mutate(table, op, ...)  insert / update / upsert rows
 - call(procedure, args)   invoke a server-side procedure (PostgREST rpc)
 - subscribe(channel, ...) listen to realtime row changes

`SupabaseBackend` implements it on top of the async supabase client. Tests
swap in an in-memory implementation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient

from app.chat.lifecycle import with_timeout
from app.chat.errors import (
    Conflict,
    MessagingError,
    NetworkTimeout,
    ProcedureMissing,
    ServerError,
    UNIQUE_VIOLATION_CODE,
    is_missing_procedure,
)

logger = logging.getLogger(__name__)

FILTER_OPS = {"eq", "neq", "lt", "lte", "gt", "gte", "in", "is"}
MUTATE_OPS = {"insert", "update", "upsert"}


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")


@dataclass(frozen=True)
class Order:
    column: str
    desc: bool = False
    # None keeps the server default (nulls first when descending)
    nulls_first: Optional[bool] = None


@dataclass(frozen=True)
class EventFilter:
    """Server-side filter for a realtime subscription."""

    event: str
    table: str
    schema: str = "public"
    filter: Optional[str] = None


class Subscription(Protocol):
    async def close(self) -> None: ...


RowCallback = Callable[[dict], None]


class BackendClient(Protocol):
    async def query(
        self,
        table: str,
        *,
        select: str = "*",
        filters: Sequence[Filter] = (),
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    async def mutate(
        self,
        table: str,
        op: str,
        payload: Any = None,
        *,
        filters: Sequence[Filter] = (),
        on_conflict: Optional[str] = None,
    ) -> list[dict]: ...

    async def call(self, procedure: str, args: dict) -> Any: ...

    async def subscribe(
        self, channel: str, event_filter: EventFilter, on_event: RowCallback
    ) -> Subscription: ...


def translate_api_error(error: APIError, procedure: str = "") -> MessagingError:
    code = getattr(error, "code", None)
    message = getattr(error, "message", None) or str(error)
    if is_missing_procedure(code, message, procedure):
        return ProcedureMissing(message, code=code)
    if code == UNIQUE_VIOLATION_CODE:
        return Conflict(message, code=code)
    return ServerError(message, code=code)


def extract_record(payload: Any) -> Optional[dict]:
    """Pull the inserted row out of a realtime postgres_changes payload."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("record"), dict):
        return data["record"]
    if isinstance(payload.get("new"), dict):
        return payload["new"]
    if isinstance(payload.get("record"), dict):
        return payload["record"]
    return None


def _apply_filters(builder, filters: Iterable[Filter]):
    for f in filters:
        if f.op == "in":
            builder = builder.in_(f.column, list(f.value))
        elif f.op == "is":
            builder = builder.is_(f.column, "null" if f.value is None else f.value)
        else:
            builder = getattr(builder, f.op)(f.column, f.value)
    return builder


class SupabaseSubscription:

    def __init__(self, client: AsyncClient, channel) -> None:
        self._client = client
        self._channel = channel
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._client.remove_channel(self._channel)
        except Exception as e:
            logger.warning(f"realtime_channel_remove_failed error={e}")


class SupabaseBackend:
    """BackendClient over the async supabase client."""

    def __init__(self, client: AsyncClient, timeout: float = 12.0) -> None:
        self._client = client
        self._timeout = timeout

    async def _execute(self, request, label: str, procedure: str = ""):
        try:
            response = await with_timeout(request.execute(), self._timeout, label)
        except httpx.TimeoutException as e:
            logger.warning(f"backend_timeout op={label}")
            raise NetworkTimeout(f"{label} timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"backend_transport_error op={label} error={e}")
            raise ServerError(f"{label} failed: {e}") from e
        except APIError as e:
            raise translate_api_error(e, procedure) from e
        return response.data

    async def query(self, table, *, select="*", filters=(), order=(), limit=None):
        builder = _apply_filters(self._client.table(table).select(select), filters)
        for o in order:
            builder = builder.order(o.column, desc=o.desc, nullsfirst=o.nulls_first)
        if limit is not None:
            builder = builder.limit(limit)
        data = await self._execute(builder, f"query:{table}")
        return list(data or [])

    async def mutate(self, table, op, payload=None, *, filters=(), on_conflict=None):
        if op not in MUTATE_OPS:
            raise ValueError(f"Unsupported mutation: {op}")
        table_ref = self._client.table(table)
        if op == "insert":
            builder = table_ref.insert(payload)
        elif op == "upsert":
            builder = table_ref.upsert(payload, on_conflict=on_conflict or "")
        else:
            if not filters:
                raise ValueError("Refusing to update without filters")
            builder = _apply_filters(table_ref.update(payload), filters)
        data = await self._execute(builder, f"{op}:{table}")
        return list(data or [])

    async def call(self, procedure, args):
        return await self._execute(
            self._client.rpc(procedure, args), f"rpc:{procedure}", procedure
        )

    async def subscribe(self, channel, event_filter, on_event):
        def _handle(payload):
            record = extract_record(payload)
            if record is None:
                logger.debug(f"realtime_payload_ignored channel={channel}")
                return
            on_event(record)

        realtime_channel = self._client.channel(channel)
        realtime_channel.on_postgres_changes(
            event_filter.event,
            callback=_handle,
            table=event_filter.table,
            schema=event_filter.schema,
            filter=event_filter.filter,
        )
        await with_timeout(realtime_channel.subscribe(), self._timeout, f"subscribe:{channel}")
        logger.info(f"realtime_subscribed channel={channel}")
        return SupabaseSubscription(self._client, realtime_channel)

    async def aclose(self) -> None:
        """Release the PostgREST connection pool held by the client."""
        await self._client.postgrest.aclose()
