"""
Validación estructural de notas de crédito antes de enviarlas a la autoridad
"""

from decimal import Decimal
from enum import Enum

from fiscalhub.common.exceptions import DocumentValidationError
from fiscalhub.modules.fiscal_documents.schemas import CreditNoteRequest


class CreditNoteRule(str, Enum):
    ISSUE_DATE_REQUIRED = "issue_date_required"
    REASON_REQUIRED = "reason_required"
    MODIFIED_DOCUMENT_REQUIRED = "modified_document_required"
    BUYER_IDENTIFICATION_REQUIRED = "buyer_identification_required"
    LINE_ITEMS_REQUIRED = "line_items_required"
    LINE_CODE_REQUIRED = "line_code_required"
    LINE_DESCRIPTION_REQUIRED = "line_description_required"
    LINE_QUANTITY_POSITIVE = "line_quantity_positive"
    LINE_UNIT_PRICE_POSITIVE = "line_unit_price_positive"


def _blank(value) -> bool:
    return value is None or not str(value).strip()


def _not_positive(value) -> bool:
    return value is None or Decimal(value) <= 0


class CreditNoteIssuanceValidator:
    """Aplica las reglas en orden fijo y falla en la primera que no se cumpla"""

    def validate(self, request: CreditNoteRequest) -> CreditNoteRequest:
        if request.issue_date is None:
            self._fail(CreditNoteRule.ISSUE_DATE_REQUIRED, "Fecha de emisión es requerida", "issue_date")

        if _blank(request.reason):
            self._fail(CreditNoteRule.REASON_REQUIRED, "Motivo es requerido", "reason")

        if request.modified_document is None or _blank(request.modified_document.number):
            self._fail(
                CreditNoteRule.MODIFIED_DOCUMENT_REQUIRED,
                "Número de documento modificado es requerido",
                "modified_document.number"
            )

        if request.buyer is None or _blank(request.buyer.identification):
            self._fail(
                CreditNoteRule.BUYER_IDENTIFICATION_REQUIRED,
                "Identificación del comprador es requerida",
                "buyer.identification"
            )

        if not request.line_items:
            self._fail(CreditNoteRule.LINE_ITEMS_REQUIRED, "Debe incluir al menos un detalle", "line_items")

        for index, line in enumerate(request.line_items):
            position = index + 1
            prefix = f"line_items[{index}]"
            if _blank(line.code):
                self._fail(
                    CreditNoteRule.LINE_CODE_REQUIRED,
                    f"Código es requerido en detalle {position}",
                    f"{prefix}.code"
                )
            if _blank(line.description):
                self._fail(
                    CreditNoteRule.LINE_DESCRIPTION_REQUIRED,
                    f"Descripción es requerida en detalle {position}",
                    f"{prefix}.description"
                )
            if _not_positive(line.quantity):
                self._fail(
                    CreditNoteRule.LINE_QUANTITY_POSITIVE,
                    f"Cantidad debe ser mayor a 0 en detalle {position}",
                    f"{prefix}.quantity"
                )
            if _not_positive(line.unit_price):
                self._fail(
                    CreditNoteRule.LINE_UNIT_PRICE_POSITIVE,
                    f"Precio unitario debe ser mayor a 0 en detalle {position}",
                    f"{prefix}.unit_price"
                )

        return request

    @staticmethod
    def _fail(rule: CreditNoteRule, message: str, field: str):
        raise DocumentValidationError(rule.value, message, field)
