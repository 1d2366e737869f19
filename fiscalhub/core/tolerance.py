"""
Comparación numérica con tolerancia

La igualdad exacta no sirve para montos que acumulan descuentos calculados
en punto flotante por el cliente; toda comparación de montos pasa por aquí.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Union
import logging

from fiscalhub.core.config import ToleranceConfig

logger = logging.getLogger(__name__)

Number = Union[Decimal, float, int, str]

CENTS = Decimal('0.01')


class ToleranceDomain(str, Enum):
    PRICE = "price"
    SUBTOTAL = "subtotal"
    TAX = "tax"
    CHECKOUT = "checkout"


def to_decimal(value: Number) -> Decimal:
    """
    Convertir cualquier valor numérico a Decimal sin redondear.
    Los float pasan por str para no arrastrar ruido binario.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        return Decimal(value)
    raise TypeError(f"Cannot convert {type(value)} to Decimal")


def round_money(value: Number) -> Decimal:
    """Redondear a centavos con redondeo comercial (ROUND_HALF_UP)"""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class ToleranceComparator:
    """Compara montos con un epsilon configurable por dominio"""

    def __init__(self, tolerances: ToleranceConfig):
        self.tolerances = tolerances

    @staticmethod
    def compare(a: Number, b: Number, epsilon: Number) -> bool:
        """
        True si |a - b| <= epsilon (el borde es inclusivo)

        Raises:
            ValueError: si epsilon no es positivo
        """
        eps = to_decimal(epsilon)
        if eps <= 0:
            raise ValueError("epsilon must be greater than zero")
        return abs(to_decimal(a) - to_decimal(b)) <= eps

    def epsilon_for(self, domain: ToleranceDomain) -> Decimal:
        return getattr(self.tolerances, ToleranceDomain(domain).value)

    def equals(self, a: Number, b: Number, domain: ToleranceDomain) -> bool:
        epsilon = self.epsilon_for(domain)
        is_equal = self.compare(a, b, epsilon)

        difference = abs(to_decimal(a) - to_decimal(b))
        if is_equal and difference > 0:
            logger.debug(
                f"Diferencia de precisión en {ToleranceDomain(domain).value}: "
                f"{a} vs {b} (diff: {difference}, tolerance: {epsilon})"
            )
        return is_equal
