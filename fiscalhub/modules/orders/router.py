from fastapi import APIRouter
from decimal import Decimal
from typing import List, Union
from pydantic import BaseModel, Field

from fiscalhub.core.tolerance import ToleranceComparator
from fiscalhub.dependencies.configDependencies import financial_config_dependency
from fiscalhub.modules.orders.revenue import RevenueSplitCalculator
from fiscalhub.modules.orders.service import PriceReconciliationEngine
from fiscalhub.modules.orders.schemas import (
    Order, OrderTotals, ReconciliationReport, RevenueSplit, RevenueSplitRequest, ShippingDistribution
)

orders_router = APIRouter(prefix="/orders", tags=["Orders"])


class ShippingDistributionRequest(BaseModel):
    total_shipping: Decimal = Field(..., ge=0)
    seller_ids: List[Union[int, str]] = Field(..., min_length=1)


def _engine(config) -> PriceReconciliationEngine:
    return PriceReconciliationEngine(config.tax_rate, ToleranceComparator(config.tolerances))


@orders_router.post("/totals", response_model=OrderTotals)
def recompute_order_totals(order: Order, config: financial_config_dependency):
    """
    Recalcular subtotal, IVA y total de una orden

    El IVA usa la tasa configurada, no la registrada en la orden.
    """
    return _engine(config).recompute_totals(order)


@orders_router.post("/reconcile", response_model=ReconciliationReport)
def reconcile_order(order: Order, config: financial_config_dependency):
    """
    Conciliar el total reportado con el recalculado

    La corrección se devuelve en la respuesta; no se persiste.
    """
    return _engine(config).reconcile_with_report(order)


@orders_router.post("/revenue-split", response_model=RevenueSplit)
def split_order_revenue(request: RevenueSplitRequest, config: financial_config_dependency):
    """Desglose de pago al vendedor (comisiones de plataforma y logística)"""
    fee_schedule = request.fee_schedule or config.fees
    return RevenueSplitCalculator().split(request.order, fee_schedule)


@orders_router.post("/shipping-distribution", response_model=ShippingDistribution)
def distribute_shipping(request: ShippingDistributionRequest, config: financial_config_dependency):
    return RevenueSplitCalculator().distribute_shipping(
        request.total_shipping,
        request.seller_ids,
        config.shipping_seller_percentage,
        config.shipping_max_seller_percentage
    )
