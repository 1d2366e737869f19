"""
Catálogos y cálculos de comprobantes electrónicos
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from fiscalhub.core.tolerance import round_money

# Código IVA -> tarifa
TAX_CODE_RATES: Dict[str, Decimal] = {
    "0": Decimal("0.00"),   # IVA 0%
    "2": Decimal("0.12"),   # IVA 12% (obsoleto)
    "3": Decimal("0.14"),   # IVA 14%
    "4": Decimal("0.15"),   # IVA 15% (vigente)
    "5": Decimal("0.05"),   # IVA 5% (materiales de construcción)
    "6": Decimal("0.00"),   # No objeto de impuesto
    "7": Decimal("0.00"),   # Exento de IVA
}

DEFAULT_TAX_CODE = "4"

IDENTIFICATION_TYPES: Dict[str, str] = {
    "04": "RUC",
    "05": "Cédula",
    "06": "Pasaporte",
    "07": "Consumidor final",
    "08": "Identificación del exterior",
}

DEFAULT_IDENTIFICATION_TYPE = "05"

# Tipo de comprobante
DOCUMENT_TYPE_CODES = {
    "INVOICE": "01",
    "CREDIT_NOTE": "04",
}

MODIFIED_INVOICE_TYPE = "01"

ACCESS_KEY_LENGTH = 49


def rate_for_tax_code(tax_code: str) -> Decimal:
    try:
        return TAX_CODE_RATES[tax_code]
    except KeyError:
        raise ValueError(f"Código IVA desconocido: {tax_code}")


def tax_code_for_rate(rate: Decimal) -> str:
    """Código IVA gravado para una tarifa (0% se reporta con código 0)"""
    for code in ("4", "5", "3", "2", "0"):
        if TAX_CODE_RATES[code] == Decimal(rate):
            return code
    raise ValueError(f"No existe código IVA para la tarifa {rate}")


def calculate_line_totals(
    quantity: Decimal, unit_price: Decimal, discount: Decimal, tax_code: str
) -> Tuple[Decimal, Decimal]:
    """
    Calcular subtotal e impuesto de una línea

    Returns:
        (line_subtotal, line_tax) redondeados a centavos
    """
    line_subtotal = round_money(quantity * unit_price - (discount or Decimal("0")))
    line_tax = round_money(line_subtotal * rate_for_tax_code(tax_code))
    return line_subtotal, line_tax


def calculate_document_totals(lines: Iterable[Tuple[Decimal, Decimal]]) -> Dict[str, Decimal]:
    """Sumar (line_subtotal, line_tax) en subtotal, impuesto y total"""
    subtotal = Decimal("0.00")
    tax_amount = Decimal("0.00")
    for line_subtotal, line_tax in lines:
        subtotal += line_subtotal
        tax_amount += line_tax
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total_amount": subtotal + tax_amount,
    }


def calculate_access_key_check_digit(base: str) -> Optional[int]:
    """
    Dígito verificador módulo 11 de la clave de acceso

    Pesos 2..7 aplicados desde la derecha; 11 -> 0 y 10 -> 1.
    """
    if not base or not base.isdigit() or len(base) != ACCESS_KEY_LENGTH - 1:
        return None

    total = 0
    weight = 2
    for digit in reversed(base):
        total += int(digit) * weight
        weight = 2 if weight == 7 else weight + 1

    check = 11 - (total % 11)
    if check == 11:
        return 0
    if check == 10:
        return 1
    return check


def is_valid_access_key(access_key: str) -> bool:
    if not access_key or len(access_key) != ACCESS_KEY_LENGTH or not access_key.isdigit():
        return False
    return calculate_access_key_check_digit(access_key[:-1]) == int(access_key[-1])


def build_access_key(
    issue_date: date,
    document_type: str,
    ruc: str,
    environment: str,
    establishment: str,
    emission_point: str,
    sequential: int,
    numeric_code: str,
    emission_type: str = "1",
) -> str:
    """
    Armar la clave de acceso de 49 dígitos

    fecha(ddmmaaaa) + tipo comprobante + RUC + ambiente + serie + secuencial
    + código numérico + tipo de emisión + dígito verificador
    """
    base = (
        f"{issue_date.strftime('%d%m%Y')}"
        f"{DOCUMENT_TYPE_CODES.get(document_type, document_type)}"
        f"{ruc}"
        f"{environment}"
        f"{establishment}{emission_point}"
        f"{sequential:09d}"
        f"{numeric_code}"
        f"{emission_type}"
    )
    check_digit = calculate_access_key_check_digit(base)
    if check_digit is None:
        raise ValueError(f"Datos inválidos para clave de acceso: {base}")
    return f"{base}{check_digit}"


def format_document_number(establishment: str, emission_point: str, sequential: int) -> str:
    """Número de comprobante en formato 001-001-000000123"""
    return f"{establishment}-{emission_point}-{sequential:09d}"
