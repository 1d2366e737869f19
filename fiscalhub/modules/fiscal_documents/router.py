"""
Router del módulo de documentos fiscales

Endpoints para emitir facturas y notas de crédito, enviarlas a la autoridad,
reintentar envíos fallidos y sincronizar su estado.

El estado autoritativo siempre viene de la autoridad: /status solo consulta,
/sync aplica el estado reportado al documento local.
"""

from fastapi import APIRouter, Query, Response, status
from typing import Any, Dict

from fiscalhub.dependencies.authorityDependencies import authority_client_dependency
from fiscalhub.dependencies.configDependencies import financial_config_dependency
from fiscalhub.dependencies.dbDependencies import db_dependency
from fiscalhub.modules.fiscal_documents.models import DocumentType
from fiscalhub.modules.fiscal_documents.schemas import (
    AuthorityStatusReport, BuyerChangeSet, CreditNoteRequest, FiscalDocumentOut, FiscalStats,
    InvoiceFromOrderRequest
)
from fiscalhub.modules.fiscal_documents.service import FiscalDocumentService
from fiscalhub.modules.fiscal_documents.tasks import retry_document_task

fiscal_documents_router = APIRouter(
    prefix="/fiscal-documents",
    tags=["Fiscal Documents"],
    responses={404: {"description": "Not found"}}
)

RENDERING_MEDIA_TYPES = {
    "pdf": "application/pdf",
    "xml": "application/xml",
}


# ===== EMISIÓN =====

@fiscal_documents_router.post(
    "/invoices/from-order", response_model=FiscalDocumentOut, status_code=status.HTTP_201_CREATED
)
def issue_invoice_from_order(
    request: InvoiceFromOrderRequest,
    db: db_dependency,
    config: financial_config_dependency
):
    """
    Emitir la factura de una orden completada

    La orden se concilia antes de facturar. La factura queda en DRAFT hasta
    que se envíe con /{id}/submit.
    """
    service = FiscalDocumentService(db, config)
    return service.to_output(service.issue_invoice_from_order(request))


@fiscal_documents_router.post(
    "/credit-notes", response_model=FiscalDocumentOut, status_code=status.HTTP_201_CREATED
)
def create_credit_note(
    request: CreditNoteRequest,
    db: db_dependency,
    config: financial_config_dependency
):
    """
    Crear una nota de crédito sobre una factura AUTHORIZED

    - **issue_date**, **reason**, **modified_document.number** y **buyer.identification** son requeridos
    - Cada detalle requiere código, descripción, cantidad > 0 y precio unitario > 0
    """
    service = FiscalDocumentService(db, config)
    return service.to_output(service.create_credit_note(request))


# ===== CONSULTAS =====

@fiscal_documents_router.get("/stats", response_model=FiscalStats)
async def get_stats(
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency,
    document_type: DocumentType = Query(DocumentType.INVOICE, description="INVOICE o CREDIT_NOTE")
):
    """Estadísticas de la autoridad para el dashboard (no es fuente de invariantes)"""
    service = FiscalDocumentService(db, config, client)
    return await service.get_stats(document_type)


@fiscal_documents_router.get("/{document_id}", response_model=FiscalDocumentOut)
def get_document(document_id: int, db: db_dependency, config: financial_config_dependency):
    service = FiscalDocumentService(db, config)
    return service.get_document_out(document_id)


@fiscal_documents_router.get("/{document_id}/status", response_model=AuthorityStatusReport)
async def check_document_status(
    document_id: int,
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency
):
    """Consultar el estado en la autoridad sin modificar el documento local"""
    service = FiscalDocumentService(db, config, client)
    return await service.check_status(document_id)


@fiscal_documents_router.get("/{document_id}/download")
async def download_document(
    document_id: int,
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency,
    format: str = Query("pdf", pattern="^(pdf|xml)$")
):
    service = FiscalDocumentService(db, config, client)
    content = await service.download_rendering(document_id, format)
    return Response(
        content=content,
        media_type=RENDERING_MEDIA_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="documento-{document_id}.{format}"'}
    )


# ===== AUTORIDAD =====

@fiscal_documents_router.post("/{document_id}/submit", response_model=FiscalDocumentOut)
async def submit_document(
    document_id: int,
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency
):
    """
    Enviar un documento en DRAFT a la autoridad

    Una nota de crédito solo se envía si su factura está AUTHORIZED.
    """
    service = FiscalDocumentService(db, config, client)
    return service.to_output(await service.submit_document(document_id))


@fiscal_documents_router.post("/{document_id}/retry", response_model=FiscalDocumentOut)
async def retry_document(
    document_id: int,
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency
):
    """
    Reintentar un documento fallido

    Se revalida el estado con la autoridad antes de reintentar. Al superar
    el máximo de reintentos el documento queda DEFINITIVELY_FAILED.
    """
    service = FiscalDocumentService(db, config, client)
    return service.to_output(await service.retry_document(document_id))


@fiscal_documents_router.post(
    "/{document_id}/retry/schedule", status_code=status.HTTP_202_ACCEPTED
)
def schedule_retry(
    document_id: int,
    db: db_dependency,
    config: financial_config_dependency,
    delay_seconds: int = Query(0, ge=0, le=86400, description="Espera antes de reintentar")
) -> Dict[str, Any]:
    """Encolar un reintento diferido (la espera la decide quien llama)"""
    service = FiscalDocumentService(db, config)
    service.get_document(document_id)

    result = retry_document_task.apply_async(args=[document_id], countdown=delay_seconds)
    return {
        "document_id": document_id,
        "task_id": result.id,
        "delay_seconds": delay_seconds,
    }


@fiscal_documents_router.post("/{document_id}/sync", response_model=FiscalDocumentOut)
async def sync_document_status(
    document_id: int,
    client: authority_client_dependency,
    db: db_dependency,
    config: financial_config_dependency
):
    """Aplicar al documento local el estado reportado por la autoridad"""
    service = FiscalDocumentService(db, config, client)
    return service.to_output(await service.sync_status(document_id))


@fiscal_documents_router.patch("/{document_id}/buyer", response_model=FiscalDocumentOut)
def update_buyer(
    document_id: int,
    change_set: BuyerChangeSet,
    db: db_dependency,
    config: financial_config_dependency
):
    """
    Corregir datos del comprador

    Solo se aplican los campos enviados. Permitido en DRAFT y en estados de falla.
    """
    service = FiscalDocumentService(db, config)
    return service.to_output(service.update_buyer(document_id, change_set))
