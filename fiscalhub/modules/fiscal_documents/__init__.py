"""
Módulo de Documentos Fiscales - FiscalHub

Facturas y notas de crédito electrónicas que deben ser autorizadas por la
autoridad tributaria (SRI) antes de tener validez.

Características principales:
- Máquina de estados común a facturas y notas de crédito
- Reintentos acotados (máximo configurable, 12 por defecto)
- Sincronización de estado con la autoridad, que es la fuente de verdad
- Validación estructural de notas de crédito antes de cualquier envío
- Clave de acceso de 49 dígitos con dígito verificador módulo 11

Componentes:
- models.py: SQLAlchemy models
- schemas.py: Pydantic schemas de dominio, solicitudes y respuestas del gateway
- state_machine.py: Transiciones permitidas
- retry.py: Política de reintentos
- validators.py: Reglas de emisión de notas de crédito
- client.py: Cliente HTTP del gateway de la autoridad
- synchronizer.py: Consulta y traducción de estados de la autoridad
- presentation.py: Etiquetas y colores de estado
- service.py: Orquestación y persistencia
- router.py: Endpoints REST API
- tasks.py: Tareas de Celery
- tests.py: Pruebas unitarias y de integración
"""

from .models import DocumentStatus, DocumentType, FiscalDocumentRecord
from .schemas import FiscalDocument, CreditNoteRequest, BuyerChangeSet
from .state_machine import FiscalDocumentStateMachine
from .retry import RetryPolicy
from .validators import CreditNoteIssuanceValidator
from .synchronizer import AuthoritySynchronizer

__all__ = [
    "DocumentStatus",
    "DocumentType",
    "FiscalDocumentRecord",
    "FiscalDocument",
    "CreditNoteRequest",
    "BuyerChangeSet",
    "FiscalDocumentStateMachine",
    "RetryPolicy",
    "CreditNoteIssuanceValidator",
    "AuthoritySynchronizer",
]
