"""
Background tasks for fiscal documents

Ninguna tarea reintenta por su cuenta: retry_document_task solo corre cuando
alguien la encola, y la sincronización periódica solo lee y aplica estados.
"""
import asyncio
import logging

from fiscalhub.common.exceptions import FiscalError
from fiscalhub.core.celery import celery_app
from fiscalhub.core.config import settings
from fiscalhub.database.database import SessionLocal
from fiscalhub.modules.fiscal_documents.client import AuthorityClient
from fiscalhub.modules.fiscal_documents.service import FiscalDocumentService

logger = logging.getLogger(__name__)


def _build_service(db) -> FiscalDocumentService:
    client = AuthorityClient(
        base_url=settings.AUTHORITY_API_URL,
        token=settings.AUTHORITY_API_TOKEN,
        timeout=settings.AUTHORITY_TIMEOUT_SECONDS
    )
    return FiscalDocumentService(db, settings.financial_config(), client)


@celery_app.task
def retry_document_task(document_id: int):
    """
    Reintento diferido de un documento fallido
    """
    db = SessionLocal()
    try:
        logger.info(f"Retrying fiscal document {document_id}")
        document = asyncio.run(_build_service(db).retry_document(document_id))
        return {"status": document.status.value, "document_id": document_id, "retry_count": document.retry_count}

    except FiscalError as e:
        logger.error(f"Retry failed for fiscal document {document_id}: {str(e)}")
        return {"status": "error", "document_id": document_id, "error": type(e).__name__, "message": str(e)}
    finally:
        db.close()


@celery_app.task
def sync_in_flight_documents(limit: int = 100):
    """
    Periodic task: aplicar el estado de la autoridad a documentos en tránsito
    """
    db = SessionLocal()
    try:
        service = _build_service(db)
        document_ids = service.list_in_flight(limit)
        logger.info(f"Syncing {len(document_ids)} in-flight fiscal documents")

        return asyncio.run(_sync_documents(service, document_ids))
    finally:
        db.close()


async def _sync_documents(service: FiscalDocumentService, document_ids):
    synced = 0
    failed = 0
    for document_id in document_ids:
        try:
            await service.sync_status(document_id)
            synced += 1
        except FiscalError as e:
            failed += 1
            logger.error(f"Status sync failed for fiscal document {document_id}: {str(e)}")

    return {"status": "completed", "synced": synced, "failed": failed}
