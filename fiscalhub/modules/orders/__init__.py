"""
Módulo de Órdenes - FiscalHub

Recalcula y concilia los montos de una orden del marketplace y deriva el
pago al vendedor. Nada de este módulo se persiste: los valores se calculan
bajo demanda a partir de la orden.

Componentes:
- schemas.py: Orden, líneas y resultados de cálculo
- service.py: PriceReconciliationEngine (subtotal, IVA, total y conciliación)
- revenue.py: RevenueSplitCalculator (comisiones, pago al vendedor, envío)
- router.py: Endpoints REST API
- tests.py: Pruebas unitarias
"""

from .schemas import Order, OrderLineItem, OrderTotals, ReconciliationReport, RevenueSplit
from .service import PriceReconciliationEngine
from .revenue import RevenueSplitCalculator

__all__ = [
    "Order",
    "OrderLineItem",
    "OrderTotals",
    "ReconciliationReport",
    "RevenueSplit",
    "PriceReconciliationEngine",
    "RevenueSplitCalculator",
]
