from fiscalhub.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Enum, Date, Text, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import date
from fiscalhub.common.mixins import TimestampMixin
import enum


class DocumentType(str, enum.Enum):
    INVOICE = "INVOICE"          # Factura
    CREDIT_NOTE = "CREDIT_NOTE"  # Nota de crédito


class DocumentStatus(str, enum.Enum):
    DRAFT = "DRAFT"                              # Borrador, no enviado
    SENT_TO_AUTHORITY = "SENT_TO_AUTHORITY"      # Enviado a la autoridad
    PENDING = "PENDING"                          # En cola de la autoridad
    PROCESSING = "PROCESSING"                    # En procesamiento
    RECEIVED = "RECEIVED"                        # Recibido, pendiente de autorización
    AUTHORIZED = "AUTHORIZED"                    # Autorizado (terminal)
    REJECTED = "REJECTED"                        # Rechazado
    NOT_AUTHORIZED = "NOT_AUTHORIZED"            # No autorizado
    RETURNED = "RETURNED"                        # Devuelto
    AUTHORITY_ERROR = "AUTHORITY_ERROR"          # Error de comunicación con la autoridad
    FAILED = "FAILED"                            # Fallido, puede reintentarse
    DEFINITIVELY_FAILED = "DEFINITIVELY_FAILED"  # Reintentos agotados (terminal)


class FiscalDocumentRecord(Base, TimestampMixin):
    """
    Espejo local de facturas y notas de crédito

    El estado local es consultivo: la autoridad es la fuente de verdad.
    Los documentos nunca se eliminan; una corrección requiere emitir un
    documento nuevo que lo reemplace.
    """
    __tablename__ = "fiscal_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_type = Column(Enum(DocumentType), nullable=False, index=True)
    number = Column(String(50), nullable=False)
    issue_date = Column(Date, nullable=False, default=date.today)
    status = Column(Enum(DocumentStatus), nullable=False, default=DocumentStatus.DRAFT, index=True)
    order_id = Column(String(50), nullable=True, index=True)

    # Buyer snapshot
    buyer_identification = Column(String(20), nullable=False)
    buyer_identification_type = Column(String(2), nullable=False, default="05")
    buyer_name = Column(String(300), nullable=False)
    buyer_address = Column(String(300), nullable=True)
    buyer_email = Column(String(150), nullable=True)
    buyer_phone = Column(String(50), nullable=True)

    # Totals
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    # Authority data
    authority_document_id = Column(String(50), nullable=True, index=True)
    access_key = Column(String(49), nullable=True)
    authorization_number = Column(String(49), nullable=True)
    authorization_date = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Credit note only
    reason = Column(Text, nullable=True)
    modified_document_type = Column(String(2), nullable=True)
    modified_document_number = Column(String(50), nullable=True)
    modified_document_date = Column(Date, nullable=True)
    referenced_document_id = Column(Integer, ForeignKey("fiscal_documents.id"), nullable=True)

    additional_info = Column(JSON, nullable=True)

    # Relationships
    line_items = relationship(
        "FiscalDocumentLineItemRecord",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="FiscalDocumentLineItemRecord.position"
    )
    referenced_document = relationship("FiscalDocumentRecord", remote_side=[id])

    __table_args__ = (
        UniqueConstraint("document_type", "number", name="uq_fiscal_document_type_number"),
    )


class FiscalDocumentLineItemRecord(Base, TimestampMixin):
    __tablename__ = "fiscal_document_line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("fiscal_documents.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    code = Column(String(50), nullable=False)
    description = Column(String(300), nullable=False)
    quantity = Column(Numeric(10, 3), nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)  # Precio sin impuestos
    discount = Column(Numeric(15, 2), nullable=False, default=0)
    tax_code = Column(String(1), nullable=False, default="4")
    line_subtotal = Column(Numeric(15, 2), nullable=False)  # quantity * unit_price - discount
    line_tax = Column(Numeric(15, 2), nullable=False, default=0)

    document = relationship("FiscalDocumentRecord", back_populates="line_items")


class DocumentSequence(Base):
    """Secuencia de numeración por tipo de documento"""
    __tablename__ = "fiscal_document_sequences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_type = Column(Enum(DocumentType), nullable=False, unique=True)
    establishment = Column(String(3), nullable=False, default="001")
    emission_point = Column(String(3), nullable=False, default="001")
    current_number = Column(Integer, nullable=False, default=0)
