from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from datetime import date, datetime

from fiscalhub.modules.fiscal_documents.models import DocumentType, DocumentStatus
from fiscalhub.modules.fiscal_documents.utils import (
    DEFAULT_IDENTIFICATION_TYPE, DEFAULT_TAX_CODE, MODIFIED_INVOICE_TYPE, is_valid_access_key
)
from fiscalhub.modules.orders.schemas import Order


TERMINAL_STATES = frozenset({DocumentStatus.AUTHORIZED, DocumentStatus.DEFINITIVELY_FAILED})


# ===== DOMAIN =====

class Buyer(BaseModel):
    identification: str = Field(..., min_length=1, max_length=20)
    identification_type: str = Field(DEFAULT_IDENTIFICATION_TYPE, max_length=2)
    name: str = Field(..., min_length=1, max_length=300)
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class DocumentLineItem(BaseModel):
    code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal = Decimal('0')
    tax_code: str = DEFAULT_TAX_CODE
    line_subtotal: Optional[Decimal] = None
    line_tax: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ModifiedDocumentReference(BaseModel):
    type: str = MODIFIED_INVOICE_TYPE
    number: str
    issue_date: Optional[date] = None


class FiscalDocument(BaseModel):
    """Factura o nota de crédito tal como la maneja el núcleo (inmutable por convención)"""
    id: Optional[int] = None
    document_type: DocumentType
    number: str
    issue_date: date
    buyer: Buyer
    line_items: List[DocumentLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal('0')
    tax_amount: Decimal = Decimal('0')
    total_amount: Decimal = Decimal('0')
    currency: str = "USD"
    status: DocumentStatus = DocumentStatus.DRAFT
    order_id: Optional[str] = None

    authority_document_id: Optional[str] = None
    access_key: Optional[str] = None
    authorization_number: Optional[str] = None
    authorization_date: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None

    # Solo notas de crédito
    reason: Optional[str] = None
    modified_document: Optional[ModifiedDocumentReference] = None
    referenced_document_id: Optional[int] = None
    additional_info: Optional[Dict[str, str]] = None

    @property
    def is_credit_note(self) -> bool:
        return self.document_type == DocumentType.CREDIT_NOTE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


# ===== REQUESTS =====

class InvoiceFromOrderRequest(BaseModel):
    order: Order
    buyer: Buyer
    issue_date: date = Field(default_factory=date.today)


class CreditNoteLineRequest(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    discount: Decimal = Field(Decimal('0'), ge=0)
    tax_code: str = DEFAULT_TAX_CODE


class ModifiedDocumentRequest(BaseModel):
    type: str = MODIFIED_INVOICE_TYPE
    number: Optional[str] = None
    issue_date: Optional[date] = None


class BuyerRequest(BaseModel):
    identification: Optional[str] = None
    identification_type: str = DEFAULT_IDENTIFICATION_TYPE
    name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class CreditNoteRequest(BaseModel):
    """
    Solicitud de nota de crédito

    Los campos son opcionales a propósito: la validación estructural la hace
    CreditNoteIssuanceValidator en orden fijo y reporta la primera regla violada.
    """
    issue_date: Optional[date] = None
    reason: Optional[str] = None
    modified_document: Optional[ModifiedDocumentRequest] = None
    buyer: Optional[BuyerRequest] = None
    line_items: List[CreditNoteLineRequest] = Field(default_factory=list)
    referenced_document_id: Optional[int] = None
    additional_info: Optional[Dict[str, str]] = None


class BuyerChangeSet(BaseModel):
    """Cambios explícitos de comprador; solo se aplican los campos enviados"""
    identification: Optional[str] = Field(None, min_length=1, max_length=20)
    identification_type: Optional[str] = Field(None, max_length=2)
    name: Optional[str] = Field(None, min_length=1, max_length=300)
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ===== AUTHORITY WIRE =====

class _AuthorityPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator('access_key', check_fields=False)
    @classmethod
    def validate_access_key(cls, v):
        if v and not is_valid_access_key(v):
            raise ValueError(f'Clave de acceso inválida: {v}')
        return v


class SubmissionResult(_AuthorityPayload):
    document_id: str = Field(
        validation_alias=AliasChoices("document_id", "documentId", "id", "facturaId", "notaCreditoId")
    )
    status: str = Field(validation_alias=AliasChoices("status", "estado"))
    access_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("access_key", "accessKey", "claveAcceso")
    )
    number: Optional[str] = Field(
        None, validation_alias=AliasChoices("number", "numeroFactura", "numeroNotaCredito", "invoice_number")
    )
    message: Optional[str] = Field(None, validation_alias=AliasChoices("message", "mensaje"))

    @field_validator('document_id', mode='before')
    @classmethod
    def coerce_id(cls, v):
        return str(v) if v is not None else v


class RetryResult(_AuthorityPayload):
    retry_count: int = Field(validation_alias=AliasChoices("retry_count", "retryCount", "intentos"))
    status: Optional[str] = Field(None, validation_alias=AliasChoices("status", "estado", "current_status"))
    authority_response: Optional[Any] = Field(
        None, validation_alias=AliasChoices("authority_response", "sri_response", "respuesta")
    )


class StatusQueryResult(_AuthorityPayload):
    current_status: str = Field(validation_alias=AliasChoices("current_status", "currentStatus", "status", "estado"))
    authority_status: Optional[str] = Field(
        None, validation_alias=AliasChoices("authority_status", "sri_status", "estadoSri")
    )
    access_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("access_key", "accessKey", "claveAcceso")
    )
    authorization_number: Optional[str] = Field(
        None, validation_alias=AliasChoices("authorization_number", "authorizationNumber", "numeroAutorizacion")
    )
    authorization_date: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("authorization_date", "authorizationDate", "fechaAutorizacion")
    )
    message: Optional[str] = Field(
        None, validation_alias=AliasChoices("message", "mensaje", "error_message")
    )

    @field_validator('authority_status', mode='before')
    @classmethod
    def flatten_authority_status(cls, v):
        # La autoridad puede devolver su respuesta completa; solo interesa el estado
        if isinstance(v, dict):
            return v.get("estado") or v.get("status")
        return v


class FiscalStats(BaseModel):
    counts_by_status: Dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0
    pending_retries: int = 0
    recent_documents: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def from_gateway_shape(cls, data):
        # Forma del gateway: {sri_stats: {...}, additional_stats: {...}, recent_*: [...]}
        if not isinstance(data, dict) or "sri_stats" not in data:
            return data
        sri_stats = dict(data.get("sri_stats") or {})
        additional = data.get("additional_stats") or {}
        success_rate = sri_stats.pop("success_rate", 0.0)
        sri_stats.pop("total_invoices", None)
        sri_stats.pop("total_credit_notes", None)
        recent = data.get("recent_documents") or data.get("recent_invoices") or data.get("recent_credit_notes") or []
        return {
            "counts_by_status": {key.upper(): int(value) for key, value in sri_stats.items()},
            "success_rate": success_rate,
            "pending_retries": additional.get("pending_retries", 0),
            "recent_documents": recent,
        }


class AuthorityStatusReport(BaseModel):
    """Estado autoritativo reportado por la autoridad (no modifica el estado local)"""
    document_id: Optional[int] = None
    authority_document_id: str
    local_status: DocumentStatus
    current_status: DocumentStatus
    authority_status: Optional[str] = None
    access_key: Optional[str] = None
    authorization_number: Optional[str] = None
    authorization_date: Optional[datetime] = None
    message: Optional[str] = None

    @property
    def differs_from_local(self) -> bool:
        return self.current_status != self.local_status


# ===== OUTPUT =====

class RetryInfo(BaseModel):
    count: int
    max_retries: int
    last_retry_at: Optional[datetime] = None
    can_retry: bool


class FiscalDocumentOut(FiscalDocument):
    status_label: str
    status_color: str
    retry_info: RetryInfo
