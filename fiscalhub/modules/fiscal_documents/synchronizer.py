"""
Sincronización con la autoridad tributaria

La autoridad es la fuente de verdad del estado. Este módulo solo consulta y
traduce su vocabulario a DocumentStatus; aplicar el resultado es decisión
del llamador (ver FiscalDocumentService.sync_status).
"""

from typing import Dict, Optional
import logging

from fiscalhub.common.exceptions import AuthorityClientError, InvalidTransition
from fiscalhub.modules.fiscal_documents.models import DocumentStatus
from fiscalhub.modules.fiscal_documents.schemas import AuthorityStatusReport, FiscalDocument

logger = logging.getLogger(__name__)

S = DocumentStatus

# Vocabulario del gateway (inglés) y del SRI (español) -> estado del dominio
AUTHORITY_STATUS_MAP: Dict[str, DocumentStatus] = {
    "DRAFT": S.DRAFT,
    "BORRADOR": S.DRAFT,
    "SENT_TO_SRI": S.SENT_TO_AUTHORITY,
    "SENT_TO_AUTHORITY": S.SENT_TO_AUTHORITY,
    "SENT": S.SENT_TO_AUTHORITY,
    "ENVIADO": S.SENT_TO_AUTHORITY,
    "PENDING": S.PENDING,
    "PENDIENTE": S.PENDING,
    "PROCESSING": S.PROCESSING,
    "EN_PROCESO": S.PROCESSING,
    "PROCESANDOSE": S.PROCESSING,
    "RECEIVED": S.RECEIVED,
    "RECIBIDA": S.RECEIVED,
    "RECIBIDO": S.RECEIVED,
    "AUTHORIZED": S.AUTHORIZED,
    "AUTORIZADO": S.AUTHORIZED,
    "AUTORIZADA": S.AUTHORIZED,
    "REJECTED": S.REJECTED,
    "RECHAZADO": S.REJECTED,
    "RECHAZADA": S.REJECTED,
    "NOT_AUTHORIZED": S.NOT_AUTHORIZED,
    "NO_AUTORIZADO": S.NOT_AUTHORIZED,
    "NO_AUTORIZADA": S.NOT_AUTHORIZED,
    "RETURNED": S.RETURNED,
    "DEVUELTA": S.RETURNED,
    "DEVUELTO": S.RETURNED,
    "SRI_ERROR": S.AUTHORITY_ERROR,
    "AUTHORITY_ERROR": S.AUTHORITY_ERROR,
    "ERROR": S.AUTHORITY_ERROR,
    "FAILED": S.FAILED,
    "FALLIDO": S.FAILED,
    "DEFINITIVELY_FAILED": S.DEFINITIVELY_FAILED,
}


def normalize_status(raw: str) -> str:
    return "_".join(raw.strip().upper().replace("-", " ").split())


def map_status(raw: Optional[str]) -> DocumentStatus:
    """
    Traducir un estado de la autoridad

    Raises:
        AuthorityClientError: si el estado no está en la tabla (nunca se adivina)
    """
    if raw is None or not str(raw).strip():
        raise AuthorityClientError(msg="La autoridad no reportó estado")
    try:
        return AUTHORITY_STATUS_MAP[normalize_status(str(raw))]
    except KeyError:
        raise AuthorityClientError(msg=f"Estado desconocido reportado por la autoridad: {raw}")


class AuthoritySynchronizer:
    def __init__(self, client):
        self.client = client

    async def check_status(self, document: FiscalDocument) -> AuthorityStatusReport:
        """
        Consultar el estado autoritativo de un documento sin modificar el estado local

        Raises:
            InvalidTransition: el documento nunca fue enviado a la autoridad
            TransientSyncError: fallo de red o timeout
            AuthorityClientError: respuesta ilegible o estado desconocido
        """
        if not document.authority_document_id:
            raise InvalidTransition(
                document.status.value, "CHECK_STATUS",
                reason=f"El documento {document.number} no ha sido enviado a la autoridad"
            )

        result = await self.client.query_status(document.document_type, document.authority_document_id)
        current_status = map_status(result.current_status)

        report = AuthorityStatusReport(
            document_id=document.id,
            authority_document_id=document.authority_document_id,
            local_status=document.status,
            current_status=current_status,
            authority_status=result.authority_status,
            access_key=result.access_key,
            authorization_number=result.authorization_number,
            authorization_date=result.authorization_date,
            message=result.message,
        )
        if report.differs_from_local:
            logger.info(
                f"Documento {document.number}: estado local {document.status.value}, "
                f"autoridad {current_status.value}"
            )
        return report
