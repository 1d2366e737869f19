"""
Taxonomía de errores del dominio fiscal

- DocumentValidationError: solicitud incompleta, nunca se envía a la autoridad
- ReconciliationWarning: total reportado vs. recalculado fuera de tolerancia (se corrige)
- TransientSyncError: red/timeout contra la autoridad, elegible para reintento
- AuthorityRejection: REJECTED / NOT_AUTHORIZED / RETURNED
- RetryExhausted: reintentos agotados, requiere intervención manual
- InvalidTransition: violación de precondición en la máquina de estados
"""
import json
from typing import Any, Dict, List, Optional


class FiscalError(Exception):
    """Base de todos los errores del dominio fiscal"""
    pass


class ReconciliationWarning(UserWarning):
    """El total reportado de una orden difiere del recalculado más allá de la tolerancia"""
    pass


class DocumentValidationError(FiscalError):
    """La solicitud no pasa la validación estructural (primera regla violada)"""

    def __init__(self, rule: str, message: str, field: Optional[str] = None):
        self.rule = rule
        self.message = message
        self.field = field
        super().__init__(message)


class DocumentNotFound(FiscalError):
    def __init__(self, document_id: Any):
        self.document_id = document_id
        super().__init__(f"Documento fiscal {document_id} no encontrado")


class InvalidTransition(FiscalError):
    """Transición de estado no permitida o con precondición incumplida"""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        allowed: Optional[List[str]] = None,
        reason: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []
        self.reason = reason

        message = f"Invalid transition: '{from_state}' -> '{to_state}'."
        if reason:
            message += f" {reason}"
        elif self.allowed:
            message += f" Allowed transitions from '{from_state}': {self.allowed}"
        super().__init__(message)


class RetryExhausted(FiscalError):
    """Se superó el máximo de reintentos; el documento queda DEFINITIVELY_FAILED"""

    def __init__(self, document: Any, max_retries: int):
        self.document = document
        self.max_retries = max_retries
        super().__init__(
            f"Documento {getattr(document, 'number', '')} agotó sus {max_retries} reintentos"
        )


class AuthorityRejection(FiscalError):
    """La autoridad rechazó, devolvió o no autorizó el documento"""

    def __init__(self, document: Any, status: str, message: Optional[str] = None):
        self.document = document
        self.status = status
        self.message = message
        super().__init__(message or f"Documento rechazado por la autoridad ({status})")


class AuthorityClientError(FiscalError):
    """Error al comunicarse con la autoridad tributaria"""

    def __init__(
        self,
        *,
        msg: Optional[str] = None,
        url: Optional[str] = None,
        payload: Optional[Dict] = None,
        response: Optional[Any] = None,
    ):
        self.msg = msg
        self.url = url
        self.payload = payload
        self.response = response
        super().__init__(msg)

    def __str__(self):
        _str = f'{self.msg}' if self.msg else self.__class__.__name__
        _str += f'\nurl: {self.url}' if self.url else ''
        _str += f'\npayload: {json.dumps(self.payload, default=str)}' if self.payload else ''
        _str += f'\nresponse: {self.response}' if self.response else ''
        return _str


class TransientSyncError(AuthorityClientError):
    """Fallo de red, timeout o 5xx; el documento puede reintentarse"""
    pass


class SubmissionError(AuthorityClientError):
    """La autoridad no aceptó la solicitud (4xx)"""
    pass
