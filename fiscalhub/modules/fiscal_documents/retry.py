from datetime import datetime, timezone
from typing import Callable, Optional
import logging

from fiscalhub.common.exceptions import InvalidTransition, RetryExhausted
from fiscalhub.modules.fiscal_documents.models import DocumentStatus
from fiscalhub.modules.fiscal_documents.schemas import FiscalDocument

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetryPolicy:
    """
    Política de reintentos de documentos fallidos

    Solo decide y registra intentos; no programa esperas ni llama a la
    autoridad. El reloj se inyecta para poder fijarlo en pruebas.
    """

    def __init__(self, max_retries: int = 12, clock: Optional[Callable[[], datetime]] = None):
        if max_retries < 0:
            raise ValueError("max_retries no puede ser negativo")
        self.max_retries = max_retries
        self.clock = clock or utc_now

    def can_retry(self, document: FiscalDocument) -> bool:
        return document.status == DocumentStatus.FAILED and document.retry_count < self.max_retries

    def remaining_attempts(self, document: FiscalDocument) -> int:
        return max(self.max_retries - document.retry_count, 0)

    def record_attempt(self, document: FiscalDocument) -> FiscalDocument:
        """
        Registrar un reintento sobre un documento FAILED

        Returns:
            Documento en SENT_TO_AUTHORITY con retry_count incrementado

        Raises:
            InvalidTransition: si el documento no está en FAILED
            RetryExhausted: si se supera max_retries; lleva el documento en DEFINITIVELY_FAILED
        """
        if document.status != DocumentStatus.FAILED:
            raise InvalidTransition(
                document.status.value, DocumentStatus.SENT_TO_AUTHORITY.value,
                allowed=[DocumentStatus.FAILED.value],
                reason="Solo se reintentan documentos en estado FAILED"
            )

        if document.retry_count + 1 > self.max_retries:
            exhausted = document.model_copy(update={
                "status": DocumentStatus.DEFINITIVELY_FAILED,
                "error_message": f"Reintentos agotados ({document.retry_count}/{self.max_retries})",
            })
            logger.warning(
                f"Documento {document.number} agotó reintentos ({document.retry_count}/{self.max_retries})"
            )
            raise RetryExhausted(exhausted, self.max_retries)

        retry_count = document.retry_count + 1
        logger.info(f"Reintento {retry_count}/{self.max_retries} del documento {document.number}")
        return document.model_copy(update={
            "status": DocumentStatus.SENT_TO_AUTHORITY,
            "retry_count": retry_count,
            "last_retry_at": self.clock(),
            "error_message": None,
        })
