"""
Fixtures for the qbsync test suite.

Every test gets its own in-memory SQLite database. QuickBooks is replaced by
fakes: FakeQuickBooksClient for service tests and FakeHTTPSession for the
HTTP client tests.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("QUICKBOOKS_CLIENT_ID", "test-client-id")
os.environ.setdefault("QUICKBOOKS_CLIENT_SECRET", "test-client-secret")

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qbsync.config import AppConfig
from qbsync.core.database import Base, register_models
from qbsync.core.exceptions import QuickBooksAPIError
from qbsync.core.timeutils import utcnow
from qbsync.models.quickbooks_connection import QuickBooksConnection
from qbsync.services.cdc_service import CDCService
from qbsync.services.checkpoint_service import CheckpointService
from qbsync.services.quickbooks_importer import QuickBooksImporter
from qbsync.services.quickbooks_oauth_service import QuickBooksOAuthService
from qbsync.services.sync_event_service import SyncEventService
from qbsync.services.sync_job_service import SyncJobService

REALM_ID = "9130357766"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeHTTPSession:
    """Stands in for requests.Session; replays queued responses or exceptions"""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeQuickBooksClient:
    """In-memory QuickBooks company with the QuickBooksClient interface"""

    def __init__(self, realm_id: str = REALM_ID, entities: Optional[Dict[str, List[dict]]] = None):
        self.realm_id = realm_id
        self.entities = entities or {}
        self.company_info: Dict[str, Any] = {}
        self.cdc_items: Dict[str, List[dict]] = {}
        self.cdc_error: Optional[Exception] = None
        self.fail_entity_types: Dict[str, Exception] = {}
        self.fail_invoice_ids: set = set()
        self.cdc_calls: List[Any] = []
        self.page_calls: List[Any] = []
        self.updated_payloads: List[dict] = []
        self.created_payloads: List[dict] = []

    def count(self, entity_type, where=None):
        if entity_type in self.fail_entity_types:
            raise self.fail_entity_types[entity_type]
        return len(self.entities.get(entity_type, []))

    def query_page(self, entity_type, start_position, max_results, where=None):
        self.page_calls.append((entity_type, start_position, max_results, where))
        items = self.entities.get(entity_type, [])
        return items[start_position - 1:start_position - 1 + max_results]

    def get_company_info(self):
        return self.company_info

    def cdc(self, entity_types, changed_since):
        self.cdc_calls.append((list(entity_types), changed_since))
        if self.cdc_error is not None:
            raise self.cdc_error
        query_response = {
            entity_type: items
            for entity_type, items in self.cdc_items.items()
            if entity_type in entity_types
        }
        query_response["startPosition"] = 1
        return [{"QueryResponse": [query_response]}]

    def create_invoice(self, payload):
        self.created_payloads.append(payload)
        total = sum(line["Amount"] for line in payload["Line"])
        return {
            "Id": "900",
            "SyncToken": "0",
            "TxnDate": payload["TxnDate"],
            "CustomerRef": payload["CustomerRef"],
            "TotalAmt": total,
            "Balance": total,
            "Line": payload["Line"],
        }

    def update_invoice(self, payload):
        if payload["Id"] in self.fail_invoice_ids:
            raise QuickBooksAPIError(
                "QuickBooks API error 400: Stale Object Error", http_status=400
            )
        self.updated_payloads.append(payload)
        total = round(sum(
            line["Amount"] for line in payload["Line"] if line.get("DetailType") == "SalesItemLineDetail"
        ), 2)
        return {
            "Id": payload["Id"],
            "SyncToken": str(int(payload["SyncToken"]) + 1),
            "TotalAmt": total,
            "Balance": total,
            "Line": payload["Line"],
            "CustomerRef": {"value": "58"},
            "TxnDate": "2024-03-01",
        }


def make_invoice(qb_id: str, amount: float, customer: str = "58", txn_date: str = "2024-03-01", sync_token: str = "0"):
    return {
        "Id": qb_id,
        "SyncToken": sync_token,
        "DocNumber": f"INV-{qb_id}",
        "TxnDate": txn_date,
        "CustomerRef": {"value": customer, "name": "Unit 4B"},
        "TotalAmt": amount,
        "Balance": amount,
        "Line": [
            {
                "Id": "1",
                "Amount": amount,
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": {"ItemRef": {"value": "1", "name": "Services"}, "Qty": 1, "UnitPrice": amount},
            },
            {"Amount": amount, "DetailType": "SubTotalLineDetail", "SubTotalLineDetail": {}},
        ],
        "MetaData": {"CreateTime": "2024-03-01T09:00:00-05:00", "LastUpdatedTime": "2024-03-02T09:00:00-05:00"},
    }


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    register_models()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def app_config():
    config = AppConfig()
    config.quickbooks.page_size = 2
    config.sync.bulk_update_delay_seconds = 0.5
    config.sync.stream_poll_interval_seconds = 0
    return config


@pytest.fixture
def connection(db):
    connection = QuickBooksConnection(
        realm_id=REALM_ID,
        company_name="Maple Residences",
        access_token="access-1",
        refresh_token="refresh-1",
        access_token_expires_at=utcnow() + timedelta(hours=1),
        is_active=True,
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


@pytest.fixture
def fake_client():
    return FakeQuickBooksClient()


@pytest.fixture
def oauth_service(app_config):
    return QuickBooksOAuthService(app_config.quickbooks)


@pytest.fixture
def checkpoint_service(app_config):
    return CheckpointService(app_config.sync)


@pytest.fixture
def event_service(app_config):
    return SyncEventService(app_config.sync)


@pytest.fixture
def cdc_service(app_config, oauth_service, checkpoint_service, fake_client):
    return CDCService(app_config, oauth_service, checkpoint_service, client_factory=lambda db, conn: fake_client)


@pytest.fixture
def sync_job_service(app_config, oauth_service, cdc_service, checkpoint_service, event_service, fake_client):
    return SyncJobService(
        app_config,
        oauth_service,
        QuickBooksImporter(app_config.quickbooks),
        cdc_service,
        checkpoint_service,
        event_service,
        client_factory=lambda db, conn: fake_client,
    )
