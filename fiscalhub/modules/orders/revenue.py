"""
Desglose de ingresos del vendedor

El vendedor recibe: subtotal de sus productos + envío (como ingreso)
- comisión de plataforma - comisión de logística.

Las comisiones se calculan solo sobre el subtotal del vendedor, nunca sobre
envío ni IVA. Los cupones los asume la plataforma por completo.
"""

from decimal import Decimal
from typing import List, Union
import logging

from fiscalhub.core.config import FeeSchedule
from fiscalhub.core.tolerance import round_money, to_decimal
from fiscalhub.modules.orders.schemas import Order, RevenueSplit, ShippingDistribution, ShippingShare

logger = logging.getLogger(__name__)


class RevenueSplitCalculator:

    def split(self, order: Order, fee_schedule: FeeSchedule) -> RevenueSplit:
        seller_subtotal = Decimal('0.00')
        seller_discount = Decimal('0.00')

        for item in order.line_items:
            seller_subtotal += item.unit_price * item.quantity
            if item.original_unit_price is not None and item.original_unit_price > item.unit_price:
                seller_discount += (item.original_unit_price - item.unit_price) * item.quantity

        seller_subtotal = round_money(seller_subtotal)
        shipping_income = round_money(order.shipping_cost)

        # Redondear las comisiones antes de calcular el pago para que la identidad sea exacta
        platform_fee_amount = round_money(seller_subtotal * fee_schedule.platform_fee_rate)
        logistics_fee_amount = round_money(seller_subtotal * fee_schedule.logistics_fee_rate)
        seller_payout = seller_subtotal + shipping_income - platform_fee_amount - logistics_fee_amount

        return RevenueSplit(
            seller_subtotal=seller_subtotal,
            seller_discount=round_money(seller_discount),
            volume_discount=round_money(order.volume_discount_total),
            shipping_income=shipping_income,
            platform_fee_rate=fee_schedule.platform_fee_rate,
            platform_fee_amount=platform_fee_amount,
            logistics_fee_rate=fee_schedule.logistics_fee_rate,
            logistics_fee_amount=logistics_fee_amount,
            seller_payout=seller_payout,
            coupon_discount_absorbed_by_platform=round_money(order.coupon_discount_total)
        )

    def distribute_shipping(
        self,
        total_shipping: Decimal,
        seller_ids: List[Union[int, str]],
        single_seller_percentage: Decimal,
        multi_seller_max_percentage: Decimal
    ) -> ShippingDistribution:
        """
        Distribuir el costo de envío entre vendedores

        - Un vendedor: recibe el porcentaje configurado
        - Varios vendedores: el porcentaje máximo se divide en partes iguales
        Lo no distribuido lo retiene la plataforma.
        """
        total_shipping = to_decimal(total_shipping)
        seller_count = len(seller_ids)
        distribution = []

        if seller_count == 1:
            percentage = to_decimal(single_seller_percentage)
            distribution.append(ShippingShare(
                seller_id=seller_ids[0],
                amount=round_money(total_shipping * percentage / 100),
                percentage=percentage
            ))
        elif seller_count > 1:
            percentage_per_seller = to_decimal(multi_seller_max_percentage) / seller_count
            amount_per_seller = round_money(total_shipping * percentage_per_seller / 100)
            for seller_id in seller_ids:
                distribution.append(ShippingShare(
                    seller_id=seller_id,
                    amount=amount_per_seller,
                    percentage=round_money(percentage_per_seller)
                ))

        distributed = sum((share.amount for share in distribution), Decimal('0.00'))
        return ShippingDistribution(
            total_shipping=total_shipping,
            seller_count=seller_count,
            distribution=distribution,
            platform_retained=round_money(total_shipping - distributed)
        )
