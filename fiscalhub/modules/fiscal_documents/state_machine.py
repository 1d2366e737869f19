"""
Máquina de estados de documentos fiscales (facturas y notas de crédito)

DRAFT -> SENT_TO_AUTHORITY -> PENDING -> PROCESSING -> RECEIVED -> AUTHORIZED
                          \\-> AUTHORITY_ERROR        \\-> AUTHORITY_ERROR
RECEIVED -> REJECTED | NOT_AUTHORIZED | RETURNED
AUTHORITY_ERROR | REJECTED | NOT_AUTHORIZED | RETURNED -> FAILED
FAILED -> SENT_TO_AUTHORITY (reintento) | DEFINITIVELY_FAILED (agotado)

AUTHORIZED y DEFINITIVELY_FAILED son terminales.

La máquina es consultiva: evita que el llamador intente transiciones
inválidas, pero el estado autoritativo siempre viene de la autoridad.
"""

from collections import deque
from typing import Dict, FrozenSet, List, Optional
import logging

from fiscalhub.common.exceptions import InvalidTransition
from fiscalhub.modules.fiscal_documents.models import DocumentStatus
from fiscalhub.modules.fiscal_documents.schemas import FiscalDocument, TERMINAL_STATES

logger = logging.getLogger(__name__)

S = DocumentStatus

ALLOWED_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    S.DRAFT: frozenset({S.SENT_TO_AUTHORITY}),
    S.SENT_TO_AUTHORITY: frozenset({S.PENDING, S.AUTHORITY_ERROR}),
    S.PENDING: frozenset({S.PROCESSING}),
    S.PROCESSING: frozenset({S.RECEIVED, S.AUTHORITY_ERROR}),
    S.RECEIVED: frozenset({S.AUTHORIZED, S.REJECTED, S.NOT_AUTHORIZED, S.RETURNED}),
    S.AUTHORITY_ERROR: frozenset({S.FAILED}),
    S.REJECTED: frozenset({S.FAILED}),
    S.NOT_AUTHORIZED: frozenset({S.FAILED}),
    S.RETURNED: frozenset({S.FAILED}),
    S.FAILED: frozenset({S.SENT_TO_AUTHORITY, S.DEFINITIVELY_FAILED}),
    S.AUTHORIZED: frozenset(),
    S.DEFINITIVELY_FAILED: frozenset(),
}

REJECTION_STATES = frozenset({S.REJECTED, S.NOT_AUTHORIZED, S.RETURNED})
FAILURE_STATES = frozenset({S.AUTHORITY_ERROR, S.FAILED}) | REJECTION_STATES
IN_FLIGHT_STATES = frozenset({S.SENT_TO_AUTHORITY, S.PENDING, S.PROCESSING, S.RECEIVED})


class FiscalDocumentStateMachine:
    """Aplica transiciones devolviendo un documento nuevo; nunca muta el original"""

    def __init__(self, transitions: Optional[Dict[DocumentStatus, FrozenSet[DocumentStatus]]] = None):
        self.transitions = transitions or ALLOWED_TRANSITIONS

    def allowed_targets(self, status: DocumentStatus) -> FrozenSet[DocumentStatus]:
        return self.transitions.get(DocumentStatus(status), frozenset())

    def can_transition(self, from_status: DocumentStatus, to_status: DocumentStatus) -> bool:
        return DocumentStatus(to_status) in self.allowed_targets(from_status)

    def is_terminal(self, status: DocumentStatus) -> bool:
        return DocumentStatus(status) in TERMINAL_STATES

    def ensure_reference_authorized(
        self, document: FiscalDocument, referenced_document: Optional[FiscalDocument]
    ) -> None:
        # Una nota de crédito solo se envía si la factura que modifica ya está autorizada
        if referenced_document is None:
            raise InvalidTransition(
                document.status.value, S.SENT_TO_AUTHORITY.value,
                reason="La nota de crédito no tiene documento modificado de referencia"
            )
        if referenced_document.status != S.AUTHORIZED:
            raise InvalidTransition(
                document.status.value, S.SENT_TO_AUTHORITY.value,
                reason=(
                    f"El documento modificado {referenced_document.number} está en estado "
                    f"{referenced_document.status.value}; debe estar AUTHORIZED"
                )
            )

    def transition(
        self,
        document: FiscalDocument,
        target: DocumentStatus,
        *,
        referenced_document: Optional[FiscalDocument] = None,
        error_message: Optional[str] = None,
    ) -> FiscalDocument:
        """
        Mover el documento al estado destino

        Raises:
            InvalidTransition: si la arista no existe o falla la precondición
        """
        target = DocumentStatus(target)
        current = document.status

        if not self.can_transition(current, target):
            raise InvalidTransition(
                current.value, target.value,
                allowed=sorted(s.value for s in self.allowed_targets(current)),
                reason="Estado terminal" if self.is_terminal(current) else None
            )

        if document.is_credit_note and current == S.DRAFT and target == S.SENT_TO_AUTHORITY:
            self.ensure_reference_authorized(document, referenced_document)

        update = {"status": target}
        if error_message is not None:
            update["error_message"] = error_message

        logger.info(f"Documento {document.number} ({document.document_type.value}): {current.value} -> {target.value}")
        return document.model_copy(update=update)

    def path_to(self, from_status: DocumentStatus, to_status: DocumentStatus) -> Optional[List[DocumentStatus]]:
        """
        Camino más corto de aristas permitidas entre dos estados (sin incluir el origen)

        Returns:
            Lista de estados a recorrer, [] si ya está en destino, None si no hay camino
        """
        from_status = DocumentStatus(from_status)
        to_status = DocumentStatus(to_status)
        if from_status == to_status:
            return []

        previous: Dict[DocumentStatus, DocumentStatus] = {}
        queue = deque([from_status])
        visited = {from_status}
        while queue:
            state = queue.popleft()
            # Orden determinista para caminos de igual longitud
            for nxt in sorted(self.allowed_targets(state), key=lambda s: s.value):
                if nxt in visited:
                    continue
                previous[nxt] = state
                if nxt == to_status:
                    path = [nxt]
                    while path[-1] in previous and previous[path[-1]] != from_status:
                        path.append(previous[path[-1]])
                    return list(reversed(path))
                visited.add(nxt)
                queue.append(nxt)
        return None

    def advance(
        self,
        document: FiscalDocument,
        target: DocumentStatus,
        *,
        referenced_document: Optional[FiscalDocument] = None,
        error_message: Optional[str] = None,
    ) -> FiscalDocument:
        """
        Llevar el documento a un estado reportado por la autoridad recorriendo aristas válidas

        Raises:
            InvalidTransition: si el estado destino no es alcanzable
        """
        target = DocumentStatus(target)
        path = self.path_to(document.status, target)
        if path is None:
            raise InvalidTransition(
                document.status.value, target.value,
                reason="Estado no alcanzable desde el estado actual"
            )

        for step in path:
            document = self.transition(
                document, step,
                referenced_document=referenced_document,
                error_message=error_message if step == target else None
            )
        return document
