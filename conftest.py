# conftest.py

import dataclasses
import os
import tempfile
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import pytest

# Set testing environment BEFORE importing the app package so config picks
# TestingConfig defaults
os.environ["FLASK_ENV"] = "testing"

from paysync import create_app  # noqa: E402
from paysync.ingest.adapters.paypal import PageResult  # noqa: E402
from paysync.models import db  # noqa: E402

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture(scope="function")
def app():
    """Create a PaySync app backed by an isolated temporary SQLite file"""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app = create_app(
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{temp_db}",
            SYNC_ADMIN_TOKEN=ADMIN_TOKEN,
            CELERY_BROKER_URL="memory://",
            CELERY_RESULT_BACKEND="cache+memory://",
            CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
        )
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        for suffix in ("", "-wal", "-shm"):
            try:
                if os.path.exists(temp_db + suffix):
                    os.unlink(temp_db + suffix)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def paypal_detail(
    transaction_id: str,
    *,
    email: str | None = "buyer@example.com",
    amount: str = "10.00",
    currency: str = "USD",
    status: str = "S",
    occurred_at: str = "2024-03-01T12:00:00+0000",
    name: str | None = "Ada Buyer",
) -> dict[str, Any]:
    """Build one ``transaction_details`` entry as the reporting API returns it."""
    payer: dict[str, Any] = {"account_id": f"PAYER-{transaction_id}"}
    if email is not None:
        payer["email_address"] = email
    if name:
        payer["payer_name"] = {"alternate_full_name": name}
    return {
        "transaction_info": {
            "transaction_id": transaction_id,
            "transaction_event_code": "T0006",
            "transaction_initiation_date": occurred_at,
            "transaction_amount": {"currency_code": currency, "value": amount},
            "transaction_status": status,
        },
        "payer_info": payer,
        "cart_info": {"item_details": [{"item_name": "Course"}]},
    }


class FakePageFetcher:
    """
    Stand-in for a payment API client.

    ``responder(start, end, page)`` returns a ``PageResult`` (or raises); every
    call is recorded in ``calls``.
    """

    def __init__(self, responder: Callable[[datetime, datetime, int], PageResult]):
        self.responder = responder
        self.calls: list[tuple[datetime, datetime, int, int]] = []

    def fetch_page(self, start, end, page, page_size=100):
        self.calls.append((start, end, page, page_size))
        return self.responder(start, end, page)


def pages_from(pages_per_chunk: dict[int, list[list[dict]]], chunk_starts: list[datetime]) -> Callable:
    """Responder serving ``pages_per_chunk[chunk_index][page - 1]``, keyed by chunk start."""

    def responder(start, end, page):
        index = chunk_starts.index(start)
        pages = pages_per_chunk.get(index, [])
        total_pages = len(pages)
        records = pages[page - 1] if 0 < page <= total_pages else []
        return PageResult(records=list(records), total_pages=total_pages, total_items=sum(len(p) for p in pages))

    return responder


@pytest.fixture
def install_source(app):
    """Swap the paypal client factory for a fake fetcher on this app."""

    def _install(fetcher, name: str = "paypal"):
        registry = app.extensions["ingest"]["source_registry"]
        registry[name] = dataclasses.replace(registry[name], client_factory=lambda config, **kwargs: fetcher)
        return fetcher

    return _install


@pytest.fixture
def utc():
    def _utc(*args):
        return datetime(*args, tzinfo=timezone.utc)

    return _utc
