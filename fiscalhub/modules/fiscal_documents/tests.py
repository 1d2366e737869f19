"""
Tests para el módulo de Documentos Fiscales

Cubren:
- Clave de acceso (módulo 11) y cálculo de líneas
- Máquina de estados: aristas permitidas, estados terminales y precondición de notas de crédito
- Política de reintentos acotada
- Validación de notas de crédito en orden fijo
- Traducción de estados de la autoridad y consulta de solo lectura
- Cliente HTTP del gateway (httpx.MockTransport)
- Servicio: emisión, envío, reintento, sincronización y corrección de comprador
- Endpoints REST
"""

import asyncio
import itertools
import pytest
import httpx
from datetime import date
from decimal import Decimal
from fastapi.testclient import TestClient

from fiscalhub.common.exceptions import (
    AuthorityClientError, AuthorityRejection, DocumentNotFound, DocumentValidationError, InvalidTransition,
    ReconciliationWarning, RetryExhausted, SubmissionError, TransientSyncError
)
from fiscalhub.database.database import get_db
from fiscalhub.dependencies.authorityDependencies import get_authority_client
from fiscalhub.main import app
from fiscalhub.modules.fiscal_documents import router as fiscal_documents_router_module
from fiscalhub.modules.fiscal_documents import tasks as fiscal_documents_tasks
from fiscalhub.modules.fiscal_documents.client import AuthorityClient
from fiscalhub.modules.fiscal_documents.models import DocumentStatus, DocumentType, FiscalDocumentRecord
from fiscalhub.modules.fiscal_documents.presentation import STATUS_PRESENTATION, present_status
from fiscalhub.modules.fiscal_documents.retry import RetryPolicy
from fiscalhub.modules.fiscal_documents.schemas import (
    Buyer, BuyerChangeSet, CreditNoteRequest, FiscalDocument, InvoiceFromOrderRequest,
    ModifiedDocumentReference, StatusQueryResult, SubmissionResult
)
from fiscalhub.modules.fiscal_documents.service import FiscalDocumentService
from fiscalhub.modules.fiscal_documents.state_machine import ALLOWED_TRANSITIONS, FiscalDocumentStateMachine
from fiscalhub.modules.fiscal_documents.synchronizer import AuthoritySynchronizer, map_status
from fiscalhub.modules.fiscal_documents.utils import (
    calculate_access_key_check_digit, calculate_line_totals, format_document_number,
    is_valid_access_key, tax_code_for_rate
)
from fiscalhub.modules.fiscal_documents.validators import CreditNoteIssuanceValidator, CreditNoteRule

S = DocumentStatus

ACCESS_KEY_BASE = "06052024011792146739001200100100000012312345678"


# ===== HELPERS =====

def make_document(status=S.DRAFT, document_type=DocumentType.INVOICE, **fields) -> FiscalDocument:
    data = {
        "id": 1,
        "document_type": document_type,
        "number": "001-001-000000001",
        "issue_date": date(2024, 5, 6),
        "buyer": Buyer(identification="1712345678", name="María Fernanda Andrade"),
        "status": status,
    }
    if document_type == DocumentType.CREDIT_NOTE:
        data["reason"] = "Devolución"
        data["modified_document"] = ModifiedDocumentReference(number="001-001-000000001")
    data.update(fields)
    return FiscalDocument(**data)


def valid_credit_note_data(**overrides) -> dict:
    data = {
        "issue_date": "2024-05-10",
        "reason": "Devolución de mercadería",
        "modified_document": {"type": "01", "number": "001-001-000000001"},
        "buyer": {"identification": "1712345678", "identification_type": "05"},
        "line_items": [
            {"code": "11", "description": "Cemento gris 50kg", "quantity": 1, "unit_price": 30},
        ],
    }
    data.update(overrides)
    return data


def force_state(db, document_id, status, **fields):
    record = db.query(FiscalDocumentRecord).filter(FiscalDocumentRecord.id == document_id).first()
    record.status = status
    for key, value in fields.items():
        setattr(record, key, value)
    db.commit()
    return record


# ===== FIXTURES =====

@pytest.fixture
def service(db_session, fake_client, financial_config, fixed_clock):
    return FiscalDocumentService(db_session, financial_config, fake_client, clock=fixed_clock)


@pytest.fixture
def invoice(service, sample_order_data, sample_buyer_data):
    request = InvoiceFromOrderRequest(
        order=sample_order_data, buyer=sample_buyer_data, issue_date=date(2024, 5, 6)
    )
    return service.issue_invoice_from_order(request)


@pytest.fixture
def authorized_invoice(db_session, invoice):
    force_state(db_session, invoice.id, S.AUTHORIZED, authority_document_id="900")
    return invoice


# ===== CLAVE DE ACCESO Y CÁLCULOS =====

class TestAccessKey:

    def test_check_digit(self):
        assert calculate_access_key_check_digit(ACCESS_KEY_BASE + "1") == 9

    def test_check_digit_eleven_becomes_zero(self):
        assert calculate_access_key_check_digit(ACCESS_KEY_BASE + "0") == 0

    def test_check_digit_ten_becomes_one(self):
        assert calculate_access_key_check_digit(ACCESS_KEY_BASE + "6") == 1

    def test_invalid_input(self):
        assert calculate_access_key_check_digit("") is None
        assert calculate_access_key_check_digit("123") is None
        assert calculate_access_key_check_digit("a" * 48) is None

    def test_build_and_validate(self, valid_access_key):
        assert valid_access_key == ACCESS_KEY_BASE + "19"
        assert len(valid_access_key) == 49
        assert is_valid_access_key(valid_access_key)

    def test_wrong_check_digit_rejected(self):
        assert not is_valid_access_key(ACCESS_KEY_BASE + "18")

    def test_document_number_format(self):
        assert format_document_number("001", "002", 123) == "001-002-000000123"


class TestLineTotals:

    def test_standard_rate(self):
        assert calculate_line_totals(Decimal("2"), Decimal("30"), Decimal("0"), "4") == (
            Decimal("60.00"), Decimal("9.00")
        )

    def test_discount_before_tax(self):
        subtotal, tax = calculate_line_totals(Decimal("1"), Decimal("100"), Decimal("10"), "4")
        assert subtotal == Decimal("90.00")
        assert tax == Decimal("13.50")

    def test_zero_rate_codes(self):
        for code in ("0", "6", "7"):
            assert calculate_line_totals(Decimal("1"), Decimal("10"), Decimal("0"), code)[1] == Decimal("0.00")

    def test_unknown_tax_code(self):
        with pytest.raises(ValueError):
            calculate_line_totals(Decimal("1"), Decimal("10"), Decimal("0"), "9")

    def test_tax_code_for_rate(self):
        assert tax_code_for_rate(Decimal("0.15")) == "4"
        assert tax_code_for_rate(Decimal("0.05")) == "5"
        with pytest.raises(ValueError):
            tax_code_for_rate(Decimal("0.13"))


# ===== MÁQUINA DE ESTADOS =====

class TestStateMachine:

    @pytest.mark.parametrize("from_status,to_status", list(itertools.product(S, S)))
    def test_only_allowed_edges(self, from_status, to_status):
        machine = FiscalDocumentStateMachine()
        document = make_document(from_status)

        if to_status in ALLOWED_TRANSITIONS[from_status]:
            assert machine.transition(document, to_status).status == to_status
        else:
            with pytest.raises(InvalidTransition):
                machine.transition(document, to_status)

    @pytest.mark.parametrize("terminal", [S.AUTHORIZED, S.DEFINITIVELY_FAILED])
    def test_terminal_states_admit_nothing(self, terminal):
        machine = FiscalDocumentStateMachine()
        assert machine.allowed_targets(terminal) == frozenset()
        for target in S:
            with pytest.raises(InvalidTransition):
                machine.transition(make_document(terminal), target)

    def test_transition_returns_new_document(self):
        document = make_document(S.DRAFT)
        sent = FiscalDocumentStateMachine().transition(document, S.SENT_TO_AUTHORITY)
        assert document.status == S.DRAFT
        assert sent.status == S.SENT_TO_AUTHORITY

    def test_invalid_transition_lists_allowed(self):
        with pytest.raises(InvalidTransition) as exc_info:
            FiscalDocumentStateMachine().transition(make_document(S.PENDING), S.AUTHORIZED)
        assert exc_info.value.allowed == ["PROCESSING"]

    def test_credit_note_requires_authorized_reference(self):
        machine = FiscalDocumentStateMachine()
        credit_note = make_document(S.DRAFT, DocumentType.CREDIT_NOTE)

        with pytest.raises(InvalidTransition):
            machine.transition(credit_note, S.SENT_TO_AUTHORITY, referenced_document=make_document(S.PENDING))
        with pytest.raises(InvalidTransition):
            machine.transition(credit_note, S.SENT_TO_AUTHORITY)

        sent = machine.transition(
            credit_note, S.SENT_TO_AUTHORITY, referenced_document=make_document(S.AUTHORIZED)
        )
        assert sent.status == S.SENT_TO_AUTHORITY

    def test_invoice_needs_no_reference(self):
        sent = FiscalDocumentStateMachine().transition(make_document(S.DRAFT), S.SENT_TO_AUTHORITY)
        assert sent.status == S.SENT_TO_AUTHORITY

    def test_path_to(self):
        machine = FiscalDocumentStateMachine()
        assert machine.path_to(S.SENT_TO_AUTHORITY, S.AUTHORIZED) == [
            S.PENDING, S.PROCESSING, S.RECEIVED, S.AUTHORIZED
        ]
        assert machine.path_to(S.RECEIVED, S.RECEIVED) == []
        assert machine.path_to(S.AUTHORIZED, S.FAILED) is None

    def test_advance_walks_allowed_edges(self):
        document = FiscalDocumentStateMachine().advance(
            make_document(S.SENT_TO_AUTHORITY), S.RETURNED, error_message="Clave de acceso registrada"
        )
        assert document.status == S.RETURNED
        assert document.error_message == "Clave de acceso registrada"

    def test_advance_unreachable(self):
        with pytest.raises(InvalidTransition):
            FiscalDocumentStateMachine().advance(make_document(S.AUTHORIZED), S.PENDING)


# ===== REINTENTOS =====

class TestRetryPolicy:

    def test_can_retry_failed_under_limit(self):
        assert RetryPolicy(12).can_retry(make_document(S.FAILED, retry_count=11))

    @pytest.mark.parametrize("status", list(S))
    def test_cannot_retry_at_limit_regardless_of_status(self, status):
        assert not RetryPolicy(12).can_retry(make_document(status, retry_count=12))

    @pytest.mark.parametrize("status", [s for s in S if s != S.FAILED])
    def test_only_failed_is_retryable(self, status):
        assert not RetryPolicy(12).can_retry(make_document(status, retry_count=0))

    def test_record_attempt(self, fixed_clock):
        document = make_document(S.FAILED, retry_count=3, error_message="timeout")
        attempt = RetryPolicy(12, fixed_clock).record_attempt(document)

        assert attempt.status == S.SENT_TO_AUTHORITY
        assert attempt.retry_count == 4
        assert attempt.last_retry_at == fixed_clock()
        assert attempt.error_message is None
        assert document.retry_count == 3

    def test_last_allowed_attempt(self):
        attempt = RetryPolicy(12).record_attempt(make_document(S.FAILED, retry_count=11))
        assert attempt.retry_count == 12

    def test_exhausted(self):
        policy = RetryPolicy(12)
        document = make_document(S.FAILED, retry_count=12)
        assert policy.can_retry(document) is False

        with pytest.raises(RetryExhausted) as exc_info:
            policy.record_attempt(document)
        assert exc_info.value.document.status == S.DEFINITIVELY_FAILED
        assert exc_info.value.max_retries == 12

    def test_non_failed_input(self):
        with pytest.raises(InvalidTransition):
            RetryPolicy(12).record_attempt(make_document(S.AUTHORITY_ERROR))

    def test_remaining_attempts(self):
        policy = RetryPolicy(12)
        assert policy.remaining_attempts(make_document(S.FAILED, retry_count=10)) == 2
        assert policy.remaining_attempts(make_document(S.FAILED, retry_count=15)) == 0


# ===== VALIDACIÓN DE NOTAS DE CRÉDITO =====

class TestCreditNoteValidator:

    def validate(self, **overrides):
        return CreditNoteIssuanceValidator().validate(CreditNoteRequest(**valid_credit_note_data(**overrides)))

    def test_valid_request(self):
        assert self.validate().reason == "Devolución de mercadería"

    @pytest.mark.parametrize("overrides,rule", [
        ({"issue_date": None}, CreditNoteRule.ISSUE_DATE_REQUIRED),
        ({"reason": "   "}, CreditNoteRule.REASON_REQUIRED),
        ({"modified_document": {"number": ""}}, CreditNoteRule.MODIFIED_DOCUMENT_REQUIRED),
        ({"modified_document": None}, CreditNoteRule.MODIFIED_DOCUMENT_REQUIRED),
        ({"buyer": {"identification": ""}}, CreditNoteRule.BUYER_IDENTIFICATION_REQUIRED),
        ({"line_items": []}, CreditNoteRule.LINE_ITEMS_REQUIRED),
        ({"line_items": [{"description": "X", "quantity": 1, "unit_price": 1}]}, CreditNoteRule.LINE_CODE_REQUIRED),
        ({"line_items": [{"code": "1", "quantity": 1, "unit_price": 1}]}, CreditNoteRule.LINE_DESCRIPTION_REQUIRED),
        ({"line_items": [{"code": "1", "description": "X", "quantity": 0, "unit_price": 1}]},
         CreditNoteRule.LINE_QUANTITY_POSITIVE),
        ({"line_items": [{"code": "1", "description": "X", "quantity": 1, "unit_price": 0}]},
         CreditNoteRule.LINE_UNIT_PRICE_POSITIVE),
    ])
    def test_each_rule(self, overrides, rule):
        with pytest.raises(DocumentValidationError) as exc_info:
            self.validate(**overrides)
        assert exc_info.value.rule == rule.value

    def test_first_violation_wins(self):
        with pytest.raises(DocumentValidationError) as exc_info:
            self.validate(issue_date=None, reason="", line_items=[])
        assert exc_info.value.rule == CreditNoteRule.ISSUE_DATE_REQUIRED.value

    def test_line_number_in_message(self):
        with pytest.raises(DocumentValidationError) as exc_info:
            self.validate(line_items=[
                {"code": "1", "description": "A", "quantity": 1, "unit_price": 5},
                {"code": "2", "description": "B", "quantity": -1, "unit_price": 5},
            ])
        assert exc_info.value.message == "Cantidad debe ser mayor a 0 en detalle 2"
        assert exc_info.value.field == "line_items[1].quantity"


# ===== SINCRONIZACIÓN =====

class TestStatusMapping:

    @pytest.mark.parametrize("raw,expected", [
        ("AUTHORIZED", S.AUTHORIZED),
        ("AUTORIZADO", S.AUTHORIZED),
        ("NO AUTORIZADO", S.NOT_AUTHORIZED),
        ("not_authorized", S.NOT_AUTHORIZED),
        ("RECIBIDA", S.RECEIVED),
        ("DEVUELTA", S.RETURNED),
        ("En proceso", S.PROCESSING),
        ("SRI_ERROR", S.AUTHORITY_ERROR),
        ("sent_to_sri", S.SENT_TO_AUTHORITY),
        ("pending", S.PENDING),
        ("definitively_failed", S.DEFINITIVELY_FAILED),
    ])
    def test_vocabulary(self, raw, expected):
        assert map_status(raw) == expected

    @pytest.mark.parametrize("raw", ["ANULADO", "", None])
    def test_unknown_is_never_guessed(self, raw):
        with pytest.raises(AuthorityClientError):
            map_status(raw)


class TestAuthoritySynchronizer:

    def test_check_status_is_read_only(self, fake_client, valid_access_key):
        fake_client.status_result = StatusQueryResult(
            current_status="AUTORIZADO", access_key=valid_access_key, authorization_number=valid_access_key
        )
        document = make_document(S.RECEIVED, authority_document_id="500")

        report = asyncio.run(AuthoritySynchronizer(fake_client).check_status(document))

        assert report.current_status == S.AUTHORIZED
        assert report.local_status == S.RECEIVED
        assert report.differs_from_local
        assert report.authorization_number == valid_access_key
        assert document.status == S.RECEIVED
        assert fake_client.calls == [("query_status", DocumentType.INVOICE, "500")]

    def test_never_submitted(self, fake_client):
        with pytest.raises(InvalidTransition):
            asyncio.run(AuthoritySynchronizer(fake_client).check_status(make_document(S.DRAFT)))
        assert fake_client.calls == []

    def test_network_failure_surfaces(self, fake_client):
        fake_client.errors["query_status"] = TransientSyncError(msg="timeout")
        document = make_document(S.PENDING, authority_document_id="500")
        with pytest.raises(TransientSyncError):
            asyncio.run(AuthoritySynchronizer(fake_client).check_status(document))
        assert document.status == S.PENDING


# ===== CLIENTE HTTP =====

def make_client(handler) -> AuthorityClient:
    return AuthorityClient("http://gateway.test/api", token="secret", timeout=5, transport=httpx.MockTransport(handler))


class TestAuthorityClient:

    def test_submit_unwraps_spanish_payload(self, valid_access_key):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "success": True, "message": "Factura creada",
                "data": {"facturaId": 77, "estado": "RECIBIDA", "claveAcceso": valid_access_key},
            })

        result = asyncio.run(make_client(handler).submit_document(DocumentType.INVOICE, {"secuencial": "1"}))

        assert result.document_id == "77"
        assert result.status == "RECIBIDA"
        assert result.access_key == valid_access_key
        assert seen["url"] == "http://gateway.test/api/invoices"
        assert seen["auth"] == "Bearer secret"

    def test_credit_note_paths(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"success": True, "data": {"retry_count": 2, "status": "PENDING"}})

        result = asyncio.run(make_client(handler).retry_document(DocumentType.CREDIT_NOTE, "9"))
        assert result.retry_count == 2
        assert seen == ["/api/admin/credit-notes/9/retry"]

    def test_query_status_flattens_authority_response(self):
        def handler(request):
            assert request.url.path == "/api/admin/invoices/5/check-status"
            return httpx.Response(200, json={"success": True, "data": {
                "current_status": "AUTHORIZED",
                "sri_status": {"estado": "AUTORIZADO"},
                "numeroAutorizacion": "123",
            }})

        result = asyncio.run(make_client(handler).query_status(DocumentType.INVOICE, "5"))
        assert result.current_status == "AUTHORIZED"
        assert result.authority_status == "AUTORIZADO"
        assert result.authorization_number == "123"

    def test_stats_gateway_shape(self):
        def handler(request):
            assert request.url.path == "/api/admin/invoices/stats/overview"
            return httpx.Response(200, json={"success": True, "data": {
                "sri_stats": {"total_invoices": 10, "authorized": 7, "rejected": 1, "pending": 2, "success_rate": 70.0},
                "additional_stats": {"pending_retries": 2},
                "recent_invoices": [{"id": 1}],
            }})

        stats = asyncio.run(make_client(handler).fetch_stats(DocumentType.INVOICE))
        assert stats.counts_by_status == {"AUTHORIZED": 7, "REJECTED": 1, "PENDING": 2}
        assert stats.success_rate == 70.0
        assert stats.pending_retries == 2
        assert stats.recent_documents == [{"id": 1}]

    def test_download_returns_bytes(self):
        def handler(request):
            assert request.url.path == "/api/admin/invoices/5/download-pdf"
            return httpx.Response(200, content=b"%PDF-1.4")

        assert asyncio.run(make_client(handler).download_rendering(DocumentType.INVOICE, "5")) == b"%PDF-1.4"

    def test_download_unsupported_format(self):
        with pytest.raises(ValueError):
            asyncio.run(make_client(lambda request: httpx.Response(200)).download_rendering(
                DocumentType.INVOICE, "5", "docx"
            ))

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(TransientSyncError):
            asyncio.run(make_client(handler).submit_document(DocumentType.INVOICE, {}))

    def test_server_error_is_transient(self):
        with pytest.raises(TransientSyncError):
            asyncio.run(make_client(lambda request: httpx.Response(503, text="down")).query_status(
                DocumentType.INVOICE, "1"
            ))

    def test_client_error_is_submission_error(self):
        def handler(request):
            return httpx.Response(400, json={"success": False, "message": "RUC inválido"})

        with pytest.raises(SubmissionError) as exc_info:
            asyncio.run(make_client(handler).submit_document(DocumentType.INVOICE, {}))
        assert exc_info.value.msg == "RUC inválido"

    def test_non_json_body(self):
        with pytest.raises(AuthorityClientError):
            asyncio.run(make_client(lambda request: httpx.Response(200, text="<html>")).submit_document(
                DocumentType.INVOICE, {}
            ))

    def test_invalid_access_key_rejected(self):
        def handler(request):
            return httpx.Response(200, json={"data": {"id": 1, "status": "RECEIVED", "accessKey": "123"}, "success": True})

        with pytest.raises(AuthorityClientError):
            asyncio.run(make_client(handler).submit_document(DocumentType.INVOICE, {}))


# ===== PRESENTACIÓN =====

class TestPresentation:

    def test_every_status_has_label(self):
        assert set(STATUS_PRESENTATION) == set(S)

    def test_label_and_color(self):
        assert present_status(S.AUTHORIZED).label == "Autorizado"
        assert present_status("DRAFT").color == "gray"


# ===== SERVICIO =====

class TestIssueInvoice:

    def test_invoice_from_order(self, invoice):
        assert invoice.status == S.DRAFT
        assert invoice.number == "001-001-000000001"
        assert invoice.order_id == "1001"
        assert invoice.subtotal == Decimal("100.00")
        assert invoice.tax_amount == Decimal("15.00")
        assert invoice.total_amount == Decimal("115.00")
        assert [line.tax_code for line in invoice.line_items] == ["4", "4"]
        assert invoice.buyer.name == "María Fernanda Andrade"

    def test_numbering_increments(self, service, invoice, sample_order_data, sample_buyer_data):
        second = service.issue_invoice_from_order(
            InvoiceFromOrderRequest(order={**sample_order_data, "id": 1002}, buyer=sample_buyer_data)
        )
        assert second.number == "001-001-000000002"
        assert second.order_id == "1002"

    def test_order_is_invoiced_once(self, service, db_session, invoice, sample_order_data, sample_buyer_data):
        with pytest.raises(DocumentValidationError) as exc_info:
            service.issue_invoice_from_order(
                InvoiceFromOrderRequest(order=sample_order_data, buyer=sample_buyer_data)
            )

        assert exc_info.value.rule == "invoice_already_issued"
        assert invoice.number in exc_info.value.message
        assert db_session.query(FiscalDocumentRecord).count() == 1

    def test_stale_order_total_is_reconciled(self, service, sample_order_data, sample_buyer_data):
        request = InvoiceFromOrderRequest(
            order={**sample_order_data, "reported_total": 110}, buyer=sample_buyer_data
        )
        with pytest.warns(ReconciliationWarning):
            document = service.issue_invoice_from_order(request)
        assert document.total_amount == Decimal("115.00")

    def test_empty_order_rejected(self, service, sample_buyer_data):
        with pytest.raises(DocumentValidationError):
            service.issue_invoice_from_order(InvoiceFromOrderRequest(order={}, buyer=sample_buyer_data))

    def test_output_presentation(self, service, invoice):
        output = service.to_output(invoice)
        assert output.status_label == "Borrador"
        assert output.retry_info.max_retries == 12
        assert output.retry_info.can_retry is False

    def test_configuration_is_required(self, db_session):
        with pytest.raises(TypeError):
            FiscalDocumentService(db_session)


class TestSubmit:

    def test_submit_invoice(self, service, fake_client, invoice):
        document = asyncio.run(service.submit_document(invoice.id))

        assert document.status == S.RECEIVED
        assert document.authority_document_id == "500"
        method, document_type, payload = fake_client.calls[0]
        assert (method, document_type) == ("submit_document", DocumentType.INVOICE)
        assert payload["secuencial"] == "000000001"
        assert payload["comprador"]["identificacion"] == "1712345678"
        assert payload["detalles"][0]["codigoIva"] == "4"

    def test_submit_authorized_immediately(self, service, fake_client, invoice, valid_access_key):
        fake_client.submission = SubmissionResult(document_id="501", status="AUTORIZADO", access_key=valid_access_key)
        document = asyncio.run(service.submit_document(invoice.id))
        assert document.status == S.AUTHORIZED
        assert document.access_key == valid_access_key

    def test_transient_error_recorded(self, service, fake_client, invoice):
        fake_client.errors["submit_document"] = TransientSyncError(msg="Timeout contra la autoridad")

        with pytest.raises(TransientSyncError):
            asyncio.run(service.submit_document(invoice.id))

        stored = service.get_document(invoice.id)
        assert stored.status == S.AUTHORITY_ERROR
        assert stored.error_message == "Timeout contra la autoridad"

    def test_rejection_recorded_and_raised(self, service, fake_client, invoice):
        fake_client.submission = SubmissionResult(
            document_id="502", status="DEVUELTA", message="Clave de acceso en procesamiento"
        )

        with pytest.raises(AuthorityRejection) as exc_info:
            asyncio.run(service.submit_document(invoice.id))

        assert exc_info.value.status == "RETURNED"
        stored = service.get_document(invoice.id)
        assert stored.status == S.RETURNED
        assert stored.error_message == "Clave de acceso en procesamiento"

    def test_cannot_submit_twice(self, service, fake_client, invoice):
        asyncio.run(service.submit_document(invoice.id))
        with pytest.raises(InvalidTransition):
            asyncio.run(service.submit_document(invoice.id))
        assert len(fake_client.calls) == 1

    def test_malformed_response_is_recorded(self, service, fake_client, invoice):
        fake_client.errors["submit_document"] = AuthorityClientError(msg="Clave de acceso inválida: 123")

        with pytest.raises(AuthorityClientError):
            asyncio.run(service.submit_document(invoice.id))

        stored = service.get_document(invoice.id)
        assert stored.status == S.AUTHORITY_ERROR
        assert stored.error_message == "Clave de acceso inválida: 123"


class TestCreditNotes:

    def test_reference_pending_invoice_fails_without_network(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.PENDING)

        with pytest.raises(InvalidTransition):
            service.create_credit_note(CreditNoteRequest(**valid_credit_note_data()))

        assert fake_client.calls == []
        assert db_session.query(FiscalDocumentRecord).filter(
            FiscalDocumentRecord.document_type == DocumentType.CREDIT_NOTE
        ).count() == 0

    def test_validation_runs_first(self, service, fake_client, authorized_invoice):
        with pytest.raises(DocumentValidationError):
            service.create_credit_note(CreditNoteRequest(**valid_credit_note_data(reason="")))
        assert fake_client.calls == []

    def test_create_and_submit(self, service, fake_client, authorized_invoice):
        credit_note = service.create_credit_note(CreditNoteRequest(**valid_credit_note_data(
            additional_info={"Pedido": "1001"}
        )))

        assert credit_note.status == S.DRAFT
        assert credit_note.document_type == DocumentType.CREDIT_NOTE
        assert credit_note.number == "001-001-000000001"
        assert credit_note.buyer.name == "María Fernanda Andrade"
        assert credit_note.referenced_document_id == authorized_invoice.id
        assert credit_note.modified_document.issue_date == date(2024, 5, 6)
        assert credit_note.total_amount == Decimal("34.50")

        asyncio.run(service.submit_document(credit_note.id))
        method, document_type, payload = fake_client.calls[0]
        assert document_type == DocumentType.CREDIT_NOTE
        assert payload["motivo"] == "Devolución de mercadería"
        assert payload["documentoModificado"]["numero"] == authorized_invoice.number
        assert payload["informacionAdicional"] == {"Pedido": "1001"}

    def test_unknown_invoice(self, service, authorized_invoice):
        with pytest.raises(DocumentNotFound):
            service.create_credit_note(CreditNoteRequest(**valid_credit_note_data(
                modified_document={"number": "001-001-999999999"}
            )))


class TestRetry:

    def test_exhausted_becomes_definitively_failed(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.FAILED, retry_count=12)

        with pytest.raises(RetryExhausted):
            asyncio.run(service.retry_document(invoice.id))

        stored = service.get_document(invoice.id)
        assert stored.status == S.DEFINITIVELY_FAILED
        assert stored.retry_count == 12
        assert fake_client.calls == []

    def test_revalidates_before_retry(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.AUTHORITY_ERROR, authority_document_id="500", error_message="timeout")
        fake_client.status_result = StatusQueryResult(current_status="SRI_ERROR")

        document = asyncio.run(service.retry_document(invoice.id))

        assert [call[0] for call in fake_client.calls] == ["query_status", "retry_document"]
        assert document.status == S.RECEIVED
        assert document.retry_count == 1
        assert document.last_retry_at is not None

    def test_authority_already_authorized(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.FAILED, authority_document_id="500")
        fake_client.status_result = StatusQueryResult(current_status="AUTHORIZED")

        with pytest.raises(InvalidTransition):
            asyncio.run(service.retry_document(invoice.id))

        assert [call[0] for call in fake_client.calls] == ["query_status"]
        assert service.get_document(invoice.id).status == S.AUTHORIZED

    def test_never_submitted_is_resubmitted(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.AUTHORITY_ERROR)

        document = asyncio.run(service.retry_document(invoice.id))

        assert [call[0] for call in fake_client.calls] == ["submit_document"]
        assert document.authority_document_id == "500"
        assert document.retry_count == 1

    def test_transient_failure_during_retry(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.FAILED, authority_document_id="500", retry_count=2)
        fake_client.status_result = StatusQueryResult(current_status="FAILED")
        fake_client.errors["retry_document"] = TransientSyncError(msg="Error de red")

        with pytest.raises(TransientSyncError):
            asyncio.run(service.retry_document(invoice.id))

        stored = service.get_document(invoice.id)
        assert stored.status == S.AUTHORITY_ERROR
        assert stored.retry_count == 3

    def test_draft_is_not_retryable(self, service, invoice):
        with pytest.raises(InvalidTransition):
            asyncio.run(service.retry_document(invoice.id))

    def test_malformed_response_during_retry_is_recorded(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.FAILED, error_message="timeout")
        fake_client.errors["submit_document"] = AuthorityClientError(msg="Respuesta ilegible de la autoridad")

        with pytest.raises(AuthorityClientError):
            asyncio.run(service.retry_document(invoice.id))

        stored = service.get_document(invoice.id)
        assert stored.status == S.AUTHORITY_ERROR
        assert stored.error_message == "Respuesta ilegible de la autoridad"
        assert stored.retry_count == 1

        del fake_client.errors["submit_document"]
        document = asyncio.run(service.retry_document(invoice.id))
        assert document.status == S.RECEIVED
        assert document.retry_count == 2


class TestSyncStatus:

    def test_sync_applies_authoritative_status(self, service, fake_client, db_session, invoice, valid_access_key):
        force_state(db_session, invoice.id, S.RECEIVED, authority_document_id="500")
        fake_client.status_result = StatusQueryResult(
            current_status="AUTORIZADO", access_key=valid_access_key, authorization_number=valid_access_key
        )

        document = asyncio.run(service.sync_status(invoice.id))

        assert document.status == S.AUTHORIZED
        assert document.authorization_number == valid_access_key

    def test_check_status_does_not_write(self, service, fake_client, db_session, invoice):
        force_state(db_session, invoice.id, S.PENDING, authority_document_id="500")

        report = asyncio.run(service.check_status(invoice.id))

        assert report.current_status == S.AUTHORIZED
        assert service.get_document(invoice.id).status == S.PENDING

    def test_in_flight_listing(self, service, db_session, invoice):
        assert service.list_in_flight() == []
        force_state(db_session, invoice.id, S.PENDING, authority_document_id="500")
        assert service.list_in_flight() == [invoice.id]


class TestUpdateBuyer:

    def test_only_set_fields_change(self, service, invoice):
        document = service.update_buyer(invoice.id, BuyerChangeSet(email="nuevo@example.com"))
        assert document.buyer.email == "nuevo@example.com"
        assert document.buyer.name == "María Fernanda Andrade"

    def test_empty_change_set(self, service, invoice):
        with pytest.raises(DocumentValidationError):
            service.update_buyer(invoice.id, BuyerChangeSet())

    def test_not_editable_once_authorized(self, service, authorized_invoice):
        with pytest.raises(InvalidTransition):
            service.update_buyer(authorized_invoice.id, BuyerChangeSet(name="Otro"))

    def test_editable_after_rejection(self, service, db_session, invoice):
        force_state(db_session, invoice.id, S.REJECTED)
        document = service.update_buyer(invoice.id, BuyerChangeSet(identification="0999999999001"))
        assert document.buyer.identification == "0999999999001"


# ===== TAREAS =====

class TestTasks:

    @pytest.fixture(autouse=True)
    def patch_service(self, monkeypatch, fake_client, financial_config, fixed_clock):
        monkeypatch.setattr(
            fiscal_documents_tasks, "_build_service",
            lambda db: FiscalDocumentService(db, financial_config, fake_client, clock=fixed_clock)
        )

    def test_sync_in_flight(self, db_session, fake_client, invoice):
        force_state(db_session, invoice.id, S.RECEIVED, authority_document_id="500")

        result = fiscal_documents_tasks.sync_in_flight_documents()

        assert result == {"status": "completed", "synced": 1, "failed": 0}
        db_session.expire_all()
        assert db_session.get(FiscalDocumentRecord, invoice.id).status == S.AUTHORIZED

    def test_sync_failure_is_counted(self, db_session, fake_client, invoice):
        force_state(db_session, invoice.id, S.PENDING, authority_document_id="500")
        fake_client.errors["query_status"] = TransientSyncError(msg="timeout")

        result = fiscal_documents_tasks.sync_in_flight_documents()
        assert result["failed"] == 1

    def test_retry_task_reports_domain_errors(self, invoice):
        result = fiscal_documents_tasks.retry_document_task(invoice.id)
        assert result["status"] == "error"
        assert result["error"] == "InvalidTransition"

    def test_retry_task(self, db_session, fake_client, invoice):
        force_state(db_session, invoice.id, S.FAILED, authority_document_id="500", retry_count=1)
        fake_client.status_result = StatusQueryResult(current_status="FAILED")

        result = fiscal_documents_tasks.retry_document_task(invoice.id)

        assert result == {"status": "RECEIVED", "document_id": invoice.id, "retry_count": 2}


# ===== ENDPOINTS =====

@pytest.fixture
def api_client(db_session, fake_client):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_authority_client] = lambda: fake_client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def issued_invoice_id(api_client, sample_order_data, sample_buyer_data):
    response = api_client.post("/fiscal-documents/invoices/from-order", json={
        "order": sample_order_data, "buyer": sample_buyer_data, "issue_date": "2024-05-06"
    })
    assert response.status_code == 201
    return response.json()["id"]


class TestFiscalDocumentEndpoints:

    def test_issue_invoice(self, api_client, issued_invoice_id):
        response = api_client.get(f"/fiscal-documents/{issued_invoice_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "DRAFT"
        assert data["status_label"] == "Borrador"
        assert Decimal(data["total_amount"]) == Decimal("115.00")

    def test_second_invoice_for_order_rejected(self, api_client, issued_invoice_id, sample_order_data, sample_buyer_data):
        response = api_client.post("/fiscal-documents/invoices/from-order", json={
            "order": sample_order_data, "buyer": sample_buyer_data
        })
        assert response.status_code == 422
        assert response.json()["rule"] == "invoice_already_issued"

    def test_not_found(self, api_client):
        response = api_client.get("/fiscal-documents/999")
        assert response.status_code == 404

    def test_credit_note_validation_error(self, api_client, issued_invoice_id):
        response = api_client.post("/fiscal-documents/credit-notes", json=valid_credit_note_data(reason=""))
        assert response.status_code == 422
        assert response.json()["rule"] == "reason_required"

    def test_credit_note_on_unauthorized_invoice(self, api_client, fake_client, issued_invoice_id):
        response = api_client.post("/fiscal-documents/credit-notes", json=valid_credit_note_data())
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"
        assert fake_client.calls == []

    def test_submit_and_status(self, api_client, fake_client, issued_invoice_id):
        response = api_client.post(f"/fiscal-documents/{issued_invoice_id}/submit")
        assert response.status_code == 200
        assert response.json()["status"] == "RECEIVED"

        response = api_client.get(f"/fiscal-documents/{issued_invoice_id}/status")
        assert response.status_code == 200
        assert response.json()["current_status"] == "AUTHORIZED"
        assert response.json()["local_status"] == "RECEIVED"

        response = api_client.post(f"/fiscal-documents/{issued_invoice_id}/sync")
        assert response.json()["status"] == "AUTHORIZED"

    def test_submit_transient_error(self, api_client, fake_client, issued_invoice_id):
        fake_client.errors["submit_document"] = TransientSyncError(msg="Timeout contra la autoridad")
        response = api_client.post(f"/fiscal-documents/{issued_invoice_id}/submit")
        assert response.status_code == 503

        response = api_client.get(f"/fiscal-documents/{issued_invoice_id}")
        assert response.json()["status"] == "AUTHORITY_ERROR"

    def test_retry_exhausted(self, api_client, db_session, issued_invoice_id):
        force_state(db_session, issued_invoice_id, S.FAILED, retry_count=12)
        response = api_client.post(f"/fiscal-documents/{issued_invoice_id}/retry")
        assert response.status_code == 409
        assert response.json()["status"] == "DEFINITIVELY_FAILED"

    def test_schedule_retry(self, api_client, monkeypatch, issued_invoice_id):
        scheduled = {}

        class FakeTask:
            def apply_async(self, args, countdown):
                scheduled.update(args=args, countdown=countdown)
                return type("AsyncResult", (), {"id": "task-1"})()

        monkeypatch.setattr(fiscal_documents_router_module, "retry_document_task", FakeTask())

        response = api_client.post(f"/fiscal-documents/{issued_invoice_id}/retry/schedule?delay_seconds=300")
        assert response.status_code == 202
        assert response.json()["task_id"] == "task-1"
        assert scheduled == {"args": [issued_invoice_id], "countdown": 300}

    def test_update_buyer(self, api_client, issued_invoice_id):
        response = api_client.patch(f"/fiscal-documents/{issued_invoice_id}/buyer", json={"phone": "022345678"})
        assert response.status_code == 200
        assert response.json()["buyer"]["phone"] == "022345678"

    def test_stats(self, api_client, fake_client):
        response = api_client.get("/fiscal-documents/stats?document_type=CREDIT_NOTE")
        assert response.status_code == 200
        assert response.json()["counts_by_status"] == {"AUTHORIZED": 3}
        assert fake_client.calls == [("fetch_stats", DocumentType.CREDIT_NOTE)]

    def test_download(self, api_client, fake_client, issued_invoice_id):
        api_client.post(f"/fiscal-documents/{issued_invoice_id}/submit")
        response = api_client.get(f"/fiscal-documents/{issued_invoice_id}/download?format=pdf")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content == b"%PDF-1.4 fake"

    def test_download_before_submit(self, api_client, issued_invoice_id):
        response = api_client.get(f"/fiscal-documents/{issued_invoice_id}/download")
        assert response.status_code == 409


class TestRootEndpoints:

    def test_health(self, api_client):
        assert api_client.get("/health").json()["status"] == "healthy"
        assert "FiscalHub" in api_client.get("/").json()["message"]
