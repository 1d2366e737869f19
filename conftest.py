"""
Fixtures compartidas de pruebas

La base de datos es SQLite en memoria; DATABASE_URL debe fijarse antes de
importar fiscalhub para que el engine se cree contra ella.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from fiscalhub.core.config import FinancialConfig, ToleranceConfig
from fiscalhub.database.database import Base, SessionLocal, create_tables, engine
from fiscalhub.modules.fiscal_documents.models import DocumentType
from fiscalhub.modules.fiscal_documents.schemas import (
    FiscalStats, RetryResult, StatusQueryResult, SubmissionResult
)
from fiscalhub.modules.fiscal_documents.utils import build_access_key

FIXED_NOW = datetime(2024, 5, 6, 12, 0, tzinfo=timezone.utc)


class FakeAuthorityClient:
    """
    Doble del gateway de la autoridad

    Registra cada llamada en `calls`; las respuestas se configuran por atributo
    y `errors[method]` hace que ese método lance la excepción indicada.
    """

    def __init__(self):
        self.calls = []
        self.errors = {}
        self.submission = SubmissionResult(document_id="500", status="RECEIVED", access_key=None)
        self.status_result = StatusQueryResult(current_status="AUTHORIZED")
        self.retry_result = RetryResult(retry_count=1, status="RECEIVED")
        self.stats = FiscalStats(counts_by_status={"AUTHORIZED": 3}, success_rate=75.0)
        self.rendering = b"%PDF-1.4 fake"

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.errors:
            raise self.errors[method]

    async def submit_document(self, document_type, payload):
        self._record("submit_document", document_type, payload)
        return self.submission

    async def retry_document(self, document_type, document_id):
        self._record("retry_document", document_type, document_id)
        return self.retry_result

    async def query_status(self, document_type, document_id):
        self._record("query_status", document_type, document_id)
        return self.status_result

    async def fetch_stats(self, document_type):
        self._record("fetch_stats", document_type)
        return self.stats

    async def download_rendering(self, document_type, document_id, format="pdf"):
        self._record("download_rendering", document_type, document_id, format)
        return self.rendering


@pytest.fixture
def db_session():
    """Sesión sobre una base SQLite en memoria recreada en cada prueba"""
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def financial_config():
    return FinancialConfig(
        tax_rate=Decimal("0.15"),
        tolerances=ToleranceConfig(
            price=Decimal("0.001"),
            subtotal=Decimal("0.001"),
            tax=Decimal("0.001"),
            checkout=Decimal("0.001"),
        ),
        max_retries=12,
    )


@pytest.fixture
def fake_client():
    return FakeAuthorityClient()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def valid_access_key():
    return build_access_key(
        issue_date=date(2024, 5, 6),
        document_type=DocumentType.INVOICE.value,
        ruc="1792146739001",
        environment="2",
        establishment="001",
        emission_point="001",
        sequential=123,
        numeric_code="12345678",
    )


@pytest.fixture
def sample_buyer_data():
    return {
        "identification": "1712345678",
        "identification_type": "05",
        "name": "María Fernanda Andrade",
        "address": "Av. Amazonas N34-120, Quito",
        "email": "mandrade@example.com",
        "phone": "0991234567",
    }


@pytest.fixture
def sample_order_data():
    """Orden de 100.00 de subtotal (2 x 30.00 + 1 x 40.00)"""
    return {
        "id": 1001,
        "seller_id": 7,
        "line_items": [
            {"product_id": 11, "product_name": "Cemento gris 50kg", "quantity": 2, "unit_price": 30.0,
             "original_unit_price": 32.5},
            {"product_id": 12, "product_name": "Varilla 12mm", "quantity": 1, "unit_price": 40.0},
        ],
        "shipping_cost": 5.0,
        "coupon_discount_total": 3.0,
        "volume_discount_total": 0,
        "tax_rate": 0.15,
        "reported_total": 115.0,
    }
