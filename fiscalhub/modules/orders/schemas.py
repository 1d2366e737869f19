from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List, Union

from fiscalhub.core.config import FeeSchedule
from fiscalhub.core.tolerance import to_decimal


class OrderLineItem(BaseModel):
    product_id: Union[int, str]
    product_name: Optional[str] = None
    quantity: Decimal = Field(..., ge=0, description="Cantidad")
    unit_price: Decimal = Field(..., ge=0, description="Precio unitario con descuentos de vendedor/volumen aplicados")
    original_unit_price: Optional[Decimal] = Field(None, ge=0, description="Precio unitario antes de descuentos")

    @field_validator('quantity', 'unit_price', 'original_unit_price', mode='before')
    @classmethod
    def coerce_decimal(cls, v):
        # Los clientes envían float; convertir vía str
        if v is None:
            return v
        return to_decimal(v)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: Optional[Union[int, str]] = None
    seller_id: Optional[Union[int, str]] = None
    line_items: List[OrderLineItem] = Field(default_factory=list)
    shipping_cost: Decimal = Field(Decimal('0'), ge=0)
    coupon_discount_total: Decimal = Field(Decimal('0'), ge=0)
    volume_discount_total: Decimal = Field(Decimal('0'), ge=0)
    tax_rate: Optional[Decimal] = Field(None, ge=0, le=1, description="Tasa registrada en checkout (solo auditoría)")
    reported_total: Decimal = Field(Decimal('0'), description="Total reportado por el checkout")

    @field_validator(
        'shipping_cost', 'coupon_discount_total', 'volume_discount_total', 'tax_rate', 'reported_total',
        mode='before'
    )
    @classmethod
    def coerce_decimal(cls, v):
        if v is None:
            return v
        return to_decimal(v)


class OrderTotals(BaseModel):
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class ReconciliationReport(BaseModel):
    """Resultado de conciliar el total reportado contra el recalculado"""
    order: Order
    recomputed: OrderTotals
    previous_total: Decimal
    difference: Decimal
    tolerance: Decimal
    corrected: bool


class RevenueSplit(BaseModel):
    """
    Desglose de lo que recibe el vendedor.

    Se deriva bajo demanda; nunca es la fuente de verdad persistida.
    Identidad documentada (no se valida en ejecución):
        customer_total == seller_subtotal + coupon_discount_absorbed_by_platform + tax_amount
    """
    seller_subtotal: Decimal
    seller_discount: Decimal
    volume_discount: Decimal
    shipping_income: Decimal
    platform_fee_rate: Decimal
    platform_fee_amount: Decimal
    logistics_fee_rate: Decimal
    logistics_fee_amount: Decimal
    seller_payout: Decimal
    coupon_discount_absorbed_by_platform: Decimal


class RevenueSplitRequest(BaseModel):
    order: Order
    fee_schedule: Optional[FeeSchedule] = None


class ShippingShare(BaseModel):
    seller_id: Union[int, str]
    amount: Decimal
    percentage: Decimal


class ShippingDistribution(BaseModel):
    total_shipping: Decimal
    seller_count: int
    distribution: List[ShippingShare] = Field(default_factory=list)
    platform_retained: Decimal
