"""
Shared fixtures for the messaging test suite.

Everything runs against `FakeBackend` (tests/fakes.py), an in-memory
implementation of the backend capability, so no Supabase project is needed.
"""

import logging

# Quiet third-party loggers before app modules configure anything.
NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "realtime", "hpack")
for _name in NOISY_LOGGERS:
    logging.getLogger(_name).setLevel(logging.WARNING)

import pytest

from app.chat.broadcast import UnreadBroadcast
from app.chat.lifecycle import SingleFlight
from app.chat.schemas import Session
from app.chat.thread import ConversationView

from tests.fakes import BUSINESS_ID, CUSTOMER_ID, OTHER_BUSINESS_ID, FakeBackend


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.add_user(CUSTOMER_ID, full_name="Casey Customer")
    backend.add_user(BUSINESS_ID, full_name="Bo Owner", business_name="Bo's Bakery", photo="https://cdn.example/bo.png")
    backend.add_user(OTHER_BUSINESS_ID, full_name="Pat Plumber")
    return backend


@pytest.fixture
def customer_session(backend):
    backend.current_user = CUSTOMER_ID
    return Session(user_id=CUSTOMER_ID, access_token="token-customer")


@pytest.fixture
def business_session(backend):
    backend.current_user = BUSINESS_ID
    return Session(user_id=BUSINESS_ID, access_token="token-business")


@pytest.fixture
def broadcast():
    return UnreadBroadcast()


@pytest.fixture
def conversation(backend):
    """A customer/business conversation with no messages yet."""
    return backend.add_conversation(CUSTOMER_ID, BUSINESS_ID, id="conv-x")


@pytest.fixture
def make_view(backend, broadcast):
    """
    Build a ConversationView wired to the fake backend.

    Each view gets its own SingleFlight so memoized loads never leak between
    tests, and the retry delay is zero.
    """
    def _make(session, **kwargs):
        kwargs.setdefault("loads", SingleFlight())
        kwargs.setdefault("retry_delay", 0)
        return ConversationView(session, backend, broadcast=broadcast, **kwargs)

    return _make


@pytest.fixture
def settle():
    """Wait for a view's background read receipts to finish."""

    async def _settle(view):
        await view._receipt_tasks.join()

    return _settle
