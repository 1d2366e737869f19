from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import logging

from fiscalhub.database.database import create_tables
from fiscalhub.common.exceptions import (
    AuthorityClientError, AuthorityRejection, DocumentNotFound, DocumentValidationError,
    InvalidTransition, RetryExhausted, SubmissionError, TransientSyncError
)

# Import routers
from fiscalhub.modules.orders.router import orders_router
from fiscalhub.modules.fiscal_documents.router import fiscal_documents_router

from fiscalhub.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="FiscalHub API",
    description="Conciliación de órdenes y ciclo de vida de comprobantes electrónicos ante la autoridad tributaria",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders_router)
app.include_router(fiscal_documents_router)


# ===== ERRORES DE DOMINIO =====

def _error_response(status_code: int, exc: Exception, **extra) -> JSONResponse:
    content = {"detail": str(exc), "error": type(exc).__name__}
    content.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(DocumentValidationError)
async def validation_error_handler(request: Request, exc: DocumentValidationError):
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, exc, rule=exc.rule, field=exc.field)


@app.exception_handler(DocumentNotFound)
async def not_found_handler(request: Request, exc: DocumentNotFound):
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return _error_response(
        status.HTTP_409_CONFLICT, exc,
        from_state=exc.from_state, to_state=exc.to_state, allowed=exc.allowed or None
    )


@app.exception_handler(RetryExhausted)
async def retry_exhausted_handler(request: Request, exc: RetryExhausted):
    return _error_response(
        status.HTTP_409_CONFLICT, exc,
        status=exc.document.status.value, max_retries=exc.max_retries
    )


@app.exception_handler(AuthorityRejection)
async def authority_rejection_handler(request: Request, exc: AuthorityRejection):
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, exc, status=exc.status)


@app.exception_handler(TransientSyncError)
async def transient_sync_error_handler(request: Request, exc: TransientSyncError):
    logger.error(f"Authority unavailable on {request.url.path}: {exc.msg}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": exc.msg, "error": type(exc).__name__}
    )


@app.exception_handler(SubmissionError)
async def submission_error_handler(request: Request, exc: SubmissionError):
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": exc.msg, "error": type(exc).__name__}
    )


@app.exception_handler(AuthorityClientError)
async def authority_client_error_handler(request: Request, exc: AuthorityClientError):
    logger.error(f"Authority client error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": exc.msg, "error": type(exc).__name__}
    )


# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    create_tables()


@app.get("/")
async def read_root():
    return {
        "message": "FiscalHub API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("FiscalHub API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Authority gateway: {settings.AUTHORITY_API_URL}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("FiscalHub API shutting down...")
