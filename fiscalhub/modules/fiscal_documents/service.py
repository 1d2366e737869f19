from fastapi import HTTPException, status
from sqlalchemy.orm import Session
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import logging

from fiscalhub.common.exceptions import (
    AuthorityClientError, AuthorityRejection, DocumentNotFound, DocumentValidationError, FiscalError,
    InvalidTransition, RetryExhausted
)
from fiscalhub.core.config import FinancialConfig
from fiscalhub.core.tolerance import ToleranceComparator
from fiscalhub.modules.fiscal_documents.models import (
    DocumentSequence, DocumentStatus, DocumentType, FiscalDocumentLineItemRecord, FiscalDocumentRecord
)
from fiscalhub.modules.fiscal_documents.presentation import present_status
from fiscalhub.modules.fiscal_documents.retry import RetryPolicy
from fiscalhub.modules.fiscal_documents.schemas import (
    AuthorityStatusReport, Buyer, BuyerChangeSet, CreditNoteRequest, DocumentLineItem, FiscalDocument,
    FiscalDocumentOut, FiscalStats, InvoiceFromOrderRequest, ModifiedDocumentReference, RetryInfo
)
from fiscalhub.modules.fiscal_documents.state_machine import (
    FAILURE_STATES, IN_FLIGHT_STATES, REJECTION_STATES, FiscalDocumentStateMachine
)
from fiscalhub.modules.fiscal_documents.synchronizer import AuthoritySynchronizer, map_status
from fiscalhub.modules.fiscal_documents.utils import (
    calculate_document_totals, calculate_line_totals, format_document_number, tax_code_for_rate
)
from fiscalhub.modules.fiscal_documents.validators import CreditNoteIssuanceValidator
from fiscalhub.modules.orders.service import PriceReconciliationEngine

logger = logging.getLogger(__name__)

# Estados en los que se permite corregir los datos del comprador
BUYER_EDITABLE_STATES = frozenset({DocumentStatus.DRAFT}) | FAILURE_STATES

S = DocumentStatus


class FiscalDocumentService:
    """
    Ciclo de vida de facturas y notas de crédito

    Orquesta validación, máquina de estados, política de reintentos y
    sincronización con la autoridad. Es el único escritor del estado local.
    """

    def __init__(
        self,
        db: Session,
        config: FinancialConfig,
        client=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.state_machine = FiscalDocumentStateMachine()
        self.retry_policy = RetryPolicy(self.config.max_retries, clock)
        self.validator = CreditNoteIssuanceValidator()
        self.synchronizer = AuthoritySynchronizer(client)

    # ===== CONVERSIONES =====

    def _to_domain(self, record: FiscalDocumentRecord) -> FiscalDocument:
        modified_document = None
        if record.modified_document_number:
            modified_document = ModifiedDocumentReference(
                type=record.modified_document_type,
                number=record.modified_document_number,
                issue_date=record.modified_document_date
            )

        return FiscalDocument(
            id=record.id,
            document_type=record.document_type,
            number=record.number,
            issue_date=record.issue_date,
            buyer=Buyer(
                identification=record.buyer_identification,
                identification_type=record.buyer_identification_type,
                name=record.buyer_name,
                address=record.buyer_address,
                email=record.buyer_email,
                phone=record.buyer_phone
            ),
            line_items=[DocumentLineItem.model_validate(item) for item in record.line_items],
            subtotal=record.subtotal,
            tax_amount=record.tax_amount,
            total_amount=record.total_amount,
            currency=record.currency,
            status=record.status,
            order_id=record.order_id,
            authority_document_id=record.authority_document_id,
            access_key=record.access_key,
            authorization_number=record.authorization_number,
            authorization_date=record.authorization_date,
            error_message=record.error_message,
            retry_count=record.retry_count or 0,
            last_retry_at=record.last_retry_at,
            reason=record.reason,
            modified_document=modified_document,
            referenced_document_id=record.referenced_document_id,
            additional_info=record.additional_info
        )

    def to_output(self, document: FiscalDocument) -> FiscalDocumentOut:
        presentation = present_status(document.status)
        return FiscalDocumentOut(
            **document.model_dump(),
            status_label=presentation.label,
            status_color=presentation.color,
            retry_info=RetryInfo(
                count=document.retry_count,
                max_retries=self.retry_policy.max_retries,
                last_retry_at=document.last_retry_at,
                can_retry=self.retry_policy.can_retry(document)
            )
        )

    def build_authority_payload(self, document: FiscalDocument) -> Dict[str, Any]:
        """Armar la solicitud para el gateway en el formato del SRI"""
        payload: Dict[str, Any] = {
            "secuencial": document.number.split("-")[-1],
            "fechaEmision": document.issue_date.isoformat(),
            "comprador": {
                "tipoIdentificacion": document.buyer.identification_type,
                "identificacion": document.buyer.identification,
                "razonSocial": document.buyer.name,
                "direccion": document.buyer.address,
                "email": document.buyer.email,
                "telefono": document.buyer.phone,
            },
            "detalles": [
                {
                    "codigoInterno": item.code,
                    "descripcion": item.description,
                    "cantidad": float(item.quantity),
                    "precioUnitario": float(item.unit_price),
                    "descuento": float(item.discount),
                    "codigoIva": item.tax_code,
                }
                for item in document.line_items
            ],
        }
        if document.is_credit_note:
            payload["motivo"] = document.reason
            payload["documentoModificado"] = {
                "tipo": document.modified_document.type,
                "numero": document.modified_document.number,
                "fechaEmision": (
                    document.modified_document.issue_date.isoformat()
                    if document.modified_document.issue_date else None
                ),
            }
        if document.additional_info:
            payload["informacionAdicional"] = document.additional_info
        return payload

    # ===== PERSISTENCIA =====

    def _get_record(self, document_id: int) -> FiscalDocumentRecord:
        record = self.db.query(FiscalDocumentRecord).filter(FiscalDocumentRecord.id == document_id).first()
        if not record:
            raise DocumentNotFound(document_id)
        return record

    def _next_number(self, document_type: DocumentType) -> str:
        sequence = self.db.query(DocumentSequence).filter(
            DocumentSequence.document_type == document_type
        ).first()

        if not sequence:
            sequence = DocumentSequence(
                document_type=document_type,
                establishment="001",
                emission_point="001",
                current_number=0
            )
            self.db.add(sequence)
            self.db.flush()

        sequence.current_number += 1
        return format_document_number(sequence.establishment, sequence.emission_point, sequence.current_number)

    def _persist(self, record: FiscalDocumentRecord, document: FiscalDocument) -> FiscalDocument:
        """Escribir el estado y los datos de autoridad del documento"""
        try:
            record.status = document.status
            record.error_message = document.error_message
            record.retry_count = document.retry_count
            record.last_retry_at = document.last_retry_at
            record.authority_document_id = document.authority_document_id
            record.access_key = document.access_key
            record.authorization_number = document.authorization_number
            record.authorization_date = document.authorization_date

            self.db.commit()
            self.db.refresh(record)
            return self._to_domain(record)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error guardando documento {document.number}: {str(e)}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error guardando documento fiscal: {str(e)}"
            )

    def _add_line_items(self, record: FiscalDocumentRecord, lines: List[DocumentLineItem]) -> None:
        for position, line in enumerate(lines):
            record.line_items.append(FiscalDocumentLineItemRecord(
                position=position,
                code=line.code,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount=line.discount,
                tax_code=line.tax_code,
                line_subtotal=line.line_subtotal,
                line_tax=line.line_tax
            ))

    @staticmethod
    def _priced_lines(lines: List[DocumentLineItem]) -> List[DocumentLineItem]:
        priced = []
        for line in lines:
            line_subtotal, line_tax = calculate_line_totals(
                line.quantity, line.unit_price, line.discount, line.tax_code
            )
            priced.append(line.model_copy(update={"line_subtotal": line_subtotal, "line_tax": line_tax}))
        return priced

    # ===== EMISIÓN =====

    def issue_invoice_from_order(self, request: InvoiceFromOrderRequest) -> FiscalDocument:
        """
        Emitir la factura (en DRAFT) de una orden completada

        La orden se concilia antes de facturar; las líneas usan el código IVA
        de la tasa configurada.
        """
        try:
            engine = PriceReconciliationEngine(self.config.tax_rate, ToleranceComparator(self.config.tolerances))
            order = engine.reconcile(request.order)

            if not order.line_items:
                raise DocumentValidationError("line_items_required", "La orden no tiene productos", "order.line_items")

            if order.id is not None:
                existing = self.db.query(FiscalDocumentRecord).filter(
                    FiscalDocumentRecord.document_type == DocumentType.INVOICE,
                    FiscalDocumentRecord.order_id == str(order.id)
                ).first()
                if existing:
                    raise DocumentValidationError(
                        "invoice_already_issued",
                        f"La orden {order.id} ya tiene la factura {existing.number}; "
                        f"para corregirla emita una nota de crédito",
                        "order.id"
                    )

            try:
                tax_code = tax_code_for_rate(self.config.tax_rate)
            except ValueError as e:
                raise DocumentValidationError("tax_rate_unsupported", str(e), "tax_rate")

            lines = self._priced_lines([
                DocumentLineItem(
                    code=str(item.product_id),
                    description=item.product_name or str(item.product_id),
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    tax_code=tax_code
                )
                for item in order.line_items
            ])
            totals = calculate_document_totals((line.line_subtotal, line.line_tax) for line in lines)

            record = FiscalDocumentRecord(
                document_type=DocumentType.INVOICE,
                number=self._next_number(DocumentType.INVOICE),
                issue_date=request.issue_date,
                status=DocumentStatus.DRAFT,
                order_id=str(order.id) if order.id is not None else None,
                buyer_identification=request.buyer.identification,
                buyer_identification_type=request.buyer.identification_type,
                buyer_name=request.buyer.name,
                buyer_address=request.buyer.address,
                buyer_email=request.buyer.email,
                buyer_phone=request.buyer.phone,
                subtotal=totals["subtotal"],
                tax_amount=totals["tax_amount"],
                total_amount=totals["total_amount"],
                retry_count=0
            )
            self._add_line_items(record, lines)

            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)

            logger.info(f"Factura {record.number} emitida para la orden {record.order_id}")
            return self._to_domain(record)

        except (FiscalError, HTTPException):
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error emitiendo factura: {str(e)}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error emitiendo factura: {str(e)}"
            )

    def _resolve_referenced_invoice(self, request: CreditNoteRequest) -> FiscalDocumentRecord:
        if request.referenced_document_id is not None:
            record = self._get_record(request.referenced_document_id)
        else:
            record = self.db.query(FiscalDocumentRecord).filter(
                FiscalDocumentRecord.document_type == DocumentType.INVOICE,
                FiscalDocumentRecord.number == request.modified_document.number
            ).first()
            if not record:
                raise DocumentNotFound(request.modified_document.number)

        if record.document_type != DocumentType.INVOICE:
            raise DocumentValidationError(
                "modified_document_not_invoice",
                f"El documento {record.number} no es una factura",
                "modified_document.number"
            )
        return record

    def create_credit_note(self, request: CreditNoteRequest) -> FiscalDocument:
        """
        Crear una nota de crédito (en DRAFT) sobre una factura autorizada

        Raises:
            DocumentValidationError: primera regla estructural violada
            DocumentNotFound: la factura modificada no existe
            InvalidTransition: la factura modificada no está AUTHORIZED
        """
        self.validator.validate(request)

        try:
            referenced_record = self._resolve_referenced_invoice(request)
            referenced = self._to_domain(referenced_record)

            lines = self._priced_lines([
                DocumentLineItem(
                    code=line.code.strip(),
                    description=line.description.strip(),
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount=line.discount,
                    tax_code=line.tax_code
                )
                for line in request.line_items
            ])
            totals = calculate_document_totals((line.line_subtotal, line.line_tax) for line in lines)

            buyer_name = (request.buyer.name or "").strip() or referenced.buyer.name
            if not buyer_name:
                raise DocumentValidationError("buyer_name_required", "Nombre del comprador es requerido", "buyer.name")
            modified_date = request.modified_document.issue_date or referenced.issue_date

            document = FiscalDocument(
                document_type=DocumentType.CREDIT_NOTE,
                number="",
                issue_date=request.issue_date,
                buyer=Buyer(
                    identification=request.buyer.identification.strip(),
                    identification_type=request.buyer.identification_type,
                    name=buyer_name,
                    address=request.buyer.address,
                    email=request.buyer.email,
                    phone=request.buyer.phone
                ),
                line_items=lines,
                reason=request.reason.strip(),
                modified_document=ModifiedDocumentReference(
                    type=request.modified_document.type,
                    number=referenced.number,
                    issue_date=modified_date
                ),
                referenced_document_id=referenced.id,
                **totals
            )
            # Sin factura autorizada no se persiste nada
            self.state_machine.ensure_reference_authorized(document, referenced)

            record = FiscalDocumentRecord(
                document_type=DocumentType.CREDIT_NOTE,
                number=self._next_number(DocumentType.CREDIT_NOTE),
                issue_date=document.issue_date,
                status=DocumentStatus.DRAFT,
                order_id=referenced.order_id,
                buyer_identification=document.buyer.identification,
                buyer_identification_type=document.buyer.identification_type,
                buyer_name=document.buyer.name,
                buyer_address=document.buyer.address,
                buyer_email=document.buyer.email,
                buyer_phone=document.buyer.phone,
                subtotal=totals["subtotal"],
                tax_amount=totals["tax_amount"],
                total_amount=totals["total_amount"],
                retry_count=0,
                reason=document.reason,
                modified_document_type=document.modified_document.type,
                modified_document_number=document.modified_document.number,
                modified_document_date=document.modified_document.issue_date,
                referenced_document_id=referenced.id,
                additional_info=request.additional_info
            )
            self._add_line_items(record, lines)

            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)

            logger.info(f"Nota de crédito {record.number} creada sobre la factura {referenced.number}")
            return self._to_domain(record)

        except (FiscalError, HTTPException):
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creando nota de crédito: {str(e)}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error creando nota de crédito: {str(e)}"
            )

    # ===== AUTORIDAD =====

    def _referenced_document(self, document: FiscalDocument) -> Optional[FiscalDocument]:
        if not document.is_credit_note or document.referenced_document_id is None:
            return None
        return self._to_domain(self._get_record(document.referenced_document_id))

    def _record_authority_failure(
        self, record: FiscalDocumentRecord, document: FiscalDocument, error: Exception
    ) -> FiscalDocument:
        message = getattr(error, "msg", None) or str(error)
        failed = self.state_machine.transition(document, S.AUTHORITY_ERROR, error_message=message)
        logger.error(f"Error de autoridad en documento {document.number}: {message}")
        return self._persist(record, failed)

    def _apply_authority_status(
        self,
        record: FiscalDocumentRecord,
        document: FiscalDocument,
        raw_status: str,
        message: Optional[str] = None,
    ) -> FiscalDocument:
        """Llevar el documento al estado reportado, persistir y señalar rechazos"""
        target = map_status(raw_status)
        error_message = message if target in FAILURE_STATES else None
        document = self.state_machine.advance(document, target, error_message=error_message)
        document = self._persist(record, document)

        if document.status in REJECTION_STATES:
            raise AuthorityRejection(document, document.status.value, message)
        return document

    async def submit_document(self, document_id: int) -> FiscalDocument:
        """
        Enviar un documento en DRAFT a la autoridad

        La transición se valida antes de cualquier llamada de red.
        """
        record = self._get_record(document_id)
        document = self._to_domain(record)

        sent = self.state_machine.transition(
            document, S.SENT_TO_AUTHORITY, referenced_document=self._referenced_document(document)
        )
        payload = self.build_authority_payload(sent)

        try:
            result = await self.client.submit_document(sent.document_type, payload)
        except AuthorityClientError as e:
            self._record_authority_failure(record, sent, e)
            raise

        sent = sent.model_copy(update={
            "authority_document_id": result.document_id,
            "access_key": result.access_key or sent.access_key,
        })
        sent = self._persist(record, sent)
        logger.info(f"Documento {sent.number} enviado a la autoridad (id {result.document_id})")

        return self._apply_authority_status(record, sent, result.status, result.message)

    async def check_status(self, document_id: int) -> AuthorityStatusReport:
        """Consultar el estado en la autoridad sin tocar el estado local"""
        document = self._to_domain(self._get_record(document_id))
        return await self.synchronizer.check_status(document)

    def _apply_report(
        self, record: FiscalDocumentRecord, document: FiscalDocument, report: AuthorityStatusReport
    ) -> FiscalDocument:
        update = {}
        if report.access_key:
            update["access_key"] = report.access_key
        if report.authorization_number:
            update["authorization_number"] = report.authorization_number
        if report.authorization_date:
            update["authorization_date"] = report.authorization_date

        if not report.differs_from_local and not update:
            return document

        document = document.model_copy(update=update)
        if report.differs_from_local:
            error_message = report.message if report.current_status in FAILURE_STATES else None
            document = self.state_machine.advance(document, report.current_status, error_message=error_message)
        return self._persist(record, document)

    async def sync_status(self, document_id: int) -> FiscalDocument:
        """Consultar la autoridad y aplicar su estado al documento local"""
        record = self._get_record(document_id)
        document = self._to_domain(record)
        report = await self.synchronizer.check_status(document)
        return self._apply_report(record, document, report)

    async def retry_document(self, document_id: int) -> FiscalDocument:
        """
        Reintentar un documento fallido

        Antes de decidir se revalida el estado con la autoridad. Los errores
        de autoridad pasan a FAILED para poder reintentarse.

        Raises:
            RetryExhausted: el documento queda DEFINITIVELY_FAILED
            InvalidTransition: el documento no es reintentable
        """
        record = self._get_record(document_id)
        document = self._to_domain(record)

        if document.authority_document_id:
            report = await self.synchronizer.check_status(document)
            document = self._apply_report(record, document, report)

        if document.status in FAILURE_STATES and document.status != S.FAILED:
            document = self._persist(record, self.state_machine.transition(
                document, S.FAILED, error_message=document.error_message
            ))

        try:
            attempt = self.retry_policy.record_attempt(document)
        except RetryExhausted as e:
            self._persist(record, e.document)
            raise
        attempt = self._persist(record, attempt)

        try:
            if attempt.authority_document_id:
                result = await self.client.retry_document(attempt.document_type, attempt.authority_document_id)
                raw_status = result.status
                message = None
            else:
                # Nunca llegó a la autoridad: se reenvía completo
                submission = await self.client.submit_document(
                    attempt.document_type, self.build_authority_payload(attempt)
                )
                attempt = self._persist(record, attempt.model_copy(update={
                    "authority_document_id": submission.document_id,
                    "access_key": submission.access_key or attempt.access_key,
                }))
                raw_status = submission.status
                message = submission.message
        except AuthorityClientError as e:
            self._record_authority_failure(record, attempt, e)
            raise

        if raw_status is None:
            return attempt
        return self._apply_authority_status(record, attempt, raw_status, message)

    # ===== CONSULTAS =====

    def get_document(self, document_id: int) -> FiscalDocument:
        return self._to_domain(self._get_record(document_id))

    def get_document_out(self, document_id: int) -> FiscalDocumentOut:
        return self.to_output(self.get_document(document_id))

    def update_buyer(self, document_id: int, change_set: BuyerChangeSet) -> FiscalDocument:
        """
        Corregir datos del comprador con un conjunto explícito de cambios

        Solo se permite antes del envío o en estados de falla.
        """
        changes = change_set.changes()
        if not changes:
            raise DocumentValidationError("buyer_changes_required", "No se enviaron cambios del comprador", "buyer")

        record = self._get_record(document_id)
        if record.status not in BUYER_EDITABLE_STATES:
            raise InvalidTransition(
                record.status.value, "UPDATE_BUYER",
                allowed=sorted(s.value for s in BUYER_EDITABLE_STATES),
                reason=f"No se puede modificar el comprador en estado {record.status.value}"
            )

        try:
            for field, value in changes.items():
                setattr(record, f"buyer_{field}", value)

            self.db.commit()
            self.db.refresh(record)

            logger.info(f"Comprador actualizado en documento {record.number}: {sorted(changes)}")
            return self._to_domain(record)

        except Exception as e:
            self.db.rollback()
            logger.error(f"Error actualizando comprador del documento {document_id}: {str(e)}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error actualizando comprador: {str(e)}"
            )

    async def get_stats(self, document_type: DocumentType) -> FiscalStats:
        return await self.client.fetch_stats(document_type)

    async def download_rendering(self, document_id: int, format: str = "pdf") -> bytes:
        document = self.get_document(document_id)
        if not document.authority_document_id:
            raise InvalidTransition(
                document.status.value, "DOWNLOAD",
                reason=f"El documento {document.number} no ha sido enviado a la autoridad"
            )
        return await self.client.download_rendering(document.document_type, document.authority_document_id, format)

    def list_in_flight(self, limit: int = 100) -> List[int]:
        """Ids de documentos enviados que aún esperan respuesta de la autoridad"""
        rows = self.db.query(FiscalDocumentRecord.id).filter(
            FiscalDocumentRecord.status.in_(list(IN_FLIGHT_STATES)),
            FiscalDocumentRecord.authority_document_id.isnot(None)
        ).order_by(FiscalDocumentRecord.id).limit(limit).all()
        return [row[0] for row in rows]
