"""
Traducción de estados para la capa de presentación

Única tabla de traducción estado -> etiqueta/color. El núcleo opera solo
con DocumentStatus; los textos nunca se comparan fuera de aquí.
"""

from typing import Dict, NamedTuple

from fiscalhub.modules.fiscal_documents.models import DocumentStatus


class StatusPresentation(NamedTuple):
    label: str
    color: str


STATUS_PRESENTATION: Dict[DocumentStatus, StatusPresentation] = {
    DocumentStatus.DRAFT: StatusPresentation("Borrador", "gray"),
    DocumentStatus.SENT_TO_AUTHORITY: StatusPresentation("Enviado al SRI", "blue"),
    DocumentStatus.PENDING: StatusPresentation("Pendiente", "yellow"),
    DocumentStatus.PROCESSING: StatusPresentation("Procesando", "indigo"),
    DocumentStatus.RECEIVED: StatusPresentation("Recibido", "blue"),
    DocumentStatus.AUTHORIZED: StatusPresentation("Autorizado", "green"),
    DocumentStatus.REJECTED: StatusPresentation("Rechazado", "red"),
    DocumentStatus.NOT_AUTHORIZED: StatusPresentation("No autorizado", "red"),
    DocumentStatus.RETURNED: StatusPresentation("Devuelto", "orange"),
    DocumentStatus.AUTHORITY_ERROR: StatusPresentation("Error SRI", "orange"),
    DocumentStatus.FAILED: StatusPresentation("Fallido", "red"),
    DocumentStatus.DEFINITIVELY_FAILED: StatusPresentation("Fallido definitivamente", "red"),
}


def present_status(status: DocumentStatus) -> StatusPresentation:
    return STATUS_PRESENTATION[DocumentStatus(status)]
