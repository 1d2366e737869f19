"""
Recalculo y conciliación de totales de órdenes

Secuencia: precio con descuento de vendedor/volumen (ya aplicado en unit_price)
→ subtotal → IVA con la tasa configurada → total.
"""

from decimal import Decimal
import logging
import warnings

from fiscalhub.common.exceptions import ReconciliationWarning
from fiscalhub.core.tolerance import ToleranceComparator, ToleranceDomain, to_decimal
from fiscalhub.modules.orders.schemas import Order, OrderTotals, ReconciliationReport

logger = logging.getLogger(__name__)


class PriceReconciliationEngine:
    def __init__(self, tax_rate: Decimal, comparator: ToleranceComparator):
        self.tax_rate = to_decimal(tax_rate)
        self.comparator = comparator

    def recompute_totals(self, order: Order) -> OrderTotals:
        """Recalcular subtotal, IVA y total desde las líneas de la orden"""
        subtotal = Decimal('0.00')
        for item in order.line_items:
            subtotal += item.unit_price * item.quantity

        # Sin redondeo: el centavo se aplica solo al facturar
        tax_amount = subtotal * self.tax_rate
        return OrderTotals(
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=subtotal + tax_amount
        )

    def reconcile_with_report(self, order: Order) -> ReconciliationReport:
        """
        Conciliar el total reportado contra el recalculado

        Si difieren más allá de la tolerancia de checkout se reemplaza el total
        y se emite un ReconciliationWarning para auditoría. La corrección no se
        persiste aquí; propagarla es decisión del llamador.
        """
        recomputed = self.recompute_totals(order)
        tolerance = self.comparator.epsilon_for(ToleranceDomain.CHECKOUT)
        difference = order.reported_total - recomputed.total

        # Sin líneas no hay nada contra qué conciliar
        if not order.line_items or self.comparator.equals(order.reported_total, recomputed.total, ToleranceDomain.CHECKOUT):
            return ReconciliationReport(
                order=order,
                recomputed=recomputed,
                previous_total=order.reported_total,
                difference=difference,
                tolerance=tolerance,
                corrected=False
            )

        message = (
            f"Orden {order.id}: total reportado {order.reported_total} difiere del "
            f"recalculado {recomputed.total} (diff: {difference}, tolerance: {tolerance}); "
            f"se corrige al valor recalculado"
        )
        logger.warning(message)
        warnings.warn(message, ReconciliationWarning, stacklevel=2)

        corrected_order = order.model_copy(update={"reported_total": recomputed.total})
        return ReconciliationReport(
            order=corrected_order,
            recomputed=recomputed,
            previous_total=order.reported_total,
            difference=difference,
            tolerance=tolerance,
            corrected=True
        )

    def reconcile(self, order: Order) -> Order:
        return self.reconcile_with_report(order).order
