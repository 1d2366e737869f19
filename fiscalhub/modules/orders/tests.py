"""
Tests para el módulo de Órdenes

Cubren:
- Recalculo de subtotal, IVA y total con la tasa configurada
- Conciliación contra el total reportado (con y sin corrección)
- Desglose de pago al vendedor y distribución de envío
- Endpoints REST
"""

import pytest
import warnings
from decimal import Decimal
from fastapi.testclient import TestClient

from fiscalhub.common.exceptions import ReconciliationWarning
from fiscalhub.core.config import FeeSchedule, ToleranceConfig
from fiscalhub.core.tolerance import ToleranceComparator
from fiscalhub.main import app
from fiscalhub.modules.orders.revenue import RevenueSplitCalculator
from fiscalhub.modules.orders.schemas import Order
from fiscalhub.modules.orders.service import PriceReconciliationEngine


client = TestClient(app)


# ===== FIXTURES =====

@pytest.fixture
def engine(financial_config):
    return PriceReconciliationEngine(financial_config.tax_rate, ToleranceComparator(financial_config.tolerances))


@pytest.fixture
def order_of_100():
    """Subtotal 100.00 en una sola línea"""
    return Order(
        id="ORD-1",
        line_items=[{"product_id": 1, "quantity": 4, "unit_price": "25.00"}],
        reported_total="115.00",
    )


# ===== RECALCULO =====

class TestRecomputeTotals:

    def test_subtotal_tax_total(self, engine, order_of_100):
        totals = engine.recompute_totals(order_of_100)
        assert totals.subtotal == Decimal("100.00")
        assert totals.tax_amount == Decimal("15.00")
        assert totals.total == Decimal("115.00")

    def test_uses_configured_rate_not_order_rate(self, engine):
        order = Order(line_items=[{"product_id": 1, "quantity": 1, "unit_price": 100}], tax_rate="0.12")
        assert engine.recompute_totals(order).tax_amount == Decimal("15.00")

    def test_configured_rate_changes_tax(self):
        engine = PriceReconciliationEngine(Decimal("0.05"), ToleranceComparator(ToleranceConfig()))
        order = Order(line_items=[{"product_id": 1, "quantity": 2, "unit_price": 10}])
        totals = engine.recompute_totals(order)
        assert totals.tax_amount == Decimal("1.00")
        assert totals.total == Decimal("21.00")

    def test_tax_keeps_sub_cent_precision(self, engine):
        order = Order(line_items=[{"product_id": 1, "quantity": 1, "unit_price": "10.03"}])
        totals = engine.recompute_totals(order)
        assert totals.tax_amount == Decimal("1.5045")
        assert totals.total == Decimal("11.5345")

    def test_no_line_items_is_zero(self, engine):
        totals = engine.recompute_totals(Order())
        assert totals.subtotal == 0
        assert totals.tax_amount == 0
        assert totals.total == 0

    def test_shipping_and_coupons_not_in_total(self, engine, sample_order_data):
        totals = engine.recompute_totals(Order(**sample_order_data))
        assert totals.subtotal == Decimal("100.00")
        assert totals.total == Decimal("115.00")

    @pytest.mark.parametrize("line_items", [
        [],
        [{"product_id": 1, "quantity": 0, "unit_price": 10}],
        [{"product_id": 1, "quantity": 3, "unit_price": 0.333}],
        [{"product_id": 1, "quantity": 1, "unit_price": 0.01}, {"product_id": 2, "quantity": 7, "unit_price": 19.99}],
        [{"product_id": 1, "quantity": 1000, "unit_price": 1234.56}],
    ])
    def test_total_never_below_subtotal(self, engine, line_items):
        totals = engine.recompute_totals(Order(line_items=line_items))
        assert totals.total >= totals.subtotal


# ===== CONCILIACIÓN =====

class TestReconcile:

    def test_within_tolerance_no_correction(self, engine, order_of_100):
        order = order_of_100.model_copy(update={"reported_total": Decimal("115.0006")})
        with warnings.catch_warnings():
            warnings.simplefilter("error", ReconciliationWarning)
            report = engine.reconcile_with_report(order)

        assert report.corrected is False
        assert report.order.reported_total == Decimal("115.0006")
        assert report.recomputed.total == Decimal("115.00")

    def test_stale_total_corrected_with_warning(self, engine, order_of_100):
        order = order_of_100.model_copy(update={"reported_total": Decimal("110.00")})
        with pytest.warns(ReconciliationWarning):
            report = engine.reconcile_with_report(order)

        assert report.corrected is True
        assert report.order.reported_total == Decimal("115.00")
        assert report.previous_total == Decimal("110.00")
        assert report.difference == Decimal("-5.00")

    def test_correction_is_logged(self, engine, order_of_100, caplog):
        order = order_of_100.model_copy(update={"reported_total": Decimal("110.00")})
        with pytest.warns(ReconciliationWarning):
            engine.reconcile(order)
        assert any(record.levelname == "WARNING" for record in caplog.records)

    def test_original_order_not_mutated(self, engine, order_of_100):
        order = order_of_100.model_copy(update={"reported_total": Decimal("110.00")})
        with pytest.warns(ReconciliationWarning):
            engine.reconcile(order)
        assert order.reported_total == Decimal("110.00")

    def test_idempotent(self, engine, order_of_100):
        order = order_of_100.model_copy(update={"reported_total": Decimal("99.99")})
        with pytest.warns(ReconciliationWarning):
            once = engine.reconcile(order)
        twice = engine.reconcile(once)
        assert once == twice

    def test_exact_total_with_sub_cent_tax_kept(self, engine):
        order = Order(
            line_items=[{"product_id": 1, "quantity": 1, "unit_price": "10.03"}],
            reported_total="11.5345",
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error", ReconciliationWarning)
            report = engine.reconcile_with_report(order)

        assert report.corrected is False
        assert report.order.reported_total == Decimal("11.5345")

    def test_no_line_items_never_corrected(self, engine):
        order = Order(reported_total="50.00")
        with warnings.catch_warnings():
            warnings.simplefilter("error", ReconciliationWarning)
            report = engine.reconcile_with_report(order)

        assert report.corrected is False
        assert report.order.reported_total == Decimal("50.00")

    def test_empty_order_no_correction(self, engine):
        report = engine.reconcile_with_report(Order())
        assert report.corrected is False
        assert report.order.reported_total == 0


# ===== DESGLOSE DEL VENDEDOR =====

class TestRevenueSplit:

    def test_split_sample_order(self, sample_order_data):
        split = RevenueSplitCalculator().split(Order(**sample_order_data), FeeSchedule())

        assert split.seller_subtotal == Decimal("100.00")
        assert split.seller_discount == Decimal("5.00")
        assert split.shipping_income == Decimal("5.00")
        assert split.platform_fee_amount == Decimal("10.00")
        assert split.logistics_fee_amount == Decimal("5.00")
        assert split.seller_payout == Decimal("90.00")
        assert split.coupon_discount_absorbed_by_platform == Decimal("3.00")

    def test_coupon_does_not_reduce_seller_payout(self, sample_order_data):
        calculator = RevenueSplitCalculator()
        with_coupon = calculator.split(Order(**sample_order_data), FeeSchedule())
        without_coupon = calculator.split(
            Order(**{**sample_order_data, "coupon_discount_total": 0}), FeeSchedule()
        )
        assert with_coupon.seller_payout == without_coupon.seller_payout

    def test_fees_only_on_seller_subtotal(self):
        order = Order(line_items=[{"product_id": 1, "quantity": 1, "unit_price": 50}], shipping_cost=100)
        split = RevenueSplitCalculator().split(order, FeeSchedule())
        assert split.platform_fee_amount == Decimal("5.00")
        assert split.logistics_fee_amount == Decimal("2.50")

    @pytest.mark.parametrize("platform_rate,logistics_rate", [
        ("0", "0"),
        ("0.10", "0.05"),
        ("0.125", "0.033"),
        ("0.07", "0.0"),
        ("1", "0"),
    ])
    def test_payout_identity(self, sample_order_data, platform_rate, logistics_rate):
        fee_schedule = FeeSchedule(platform_fee_rate=Decimal(platform_rate), logistics_fee_rate=Decimal(logistics_rate))
        order = Order(**{**sample_order_data, "line_items": [
            {"product_id": 1, "quantity": 3, "unit_price": 19.99},
            {"product_id": 2, "quantity": 1, "unit_price": 7.77},
        ]})
        split = RevenueSplitCalculator().split(order, fee_schedule)
        assert split.seller_payout == (
            split.seller_subtotal + split.shipping_income - split.platform_fee_amount - split.logistics_fee_amount
        )


class TestShippingDistribution:

    def test_single_seller_gets_configured_percentage(self):
        result = RevenueSplitCalculator().distribute_shipping(Decimal("10.00"), [7], Decimal("80"), Decimal("40"))
        assert result.distribution[0].amount == Decimal("8.00")
        assert result.platform_retained == Decimal("2.00")

    def test_multiple_sellers_split_max_percentage(self):
        result = RevenueSplitCalculator().distribute_shipping(Decimal("10.00"), [1, 2], Decimal("80"), Decimal("40"))
        assert [share.amount for share in result.distribution] == [Decimal("2.00"), Decimal("2.00")]
        assert result.platform_retained == Decimal("6.00")

    def test_no_sellers(self):
        result = RevenueSplitCalculator().distribute_shipping(Decimal("10.00"), [], Decimal("80"), Decimal("40"))
        assert result.distribution == []
        assert result.platform_retained == Decimal("10.00")


# ===== ENDPOINTS =====

class TestOrdersEndpoints:

    def test_totals(self, sample_order_data):
        response = client.post("/orders/totals", json=sample_order_data)
        assert response.status_code == 200
        assert Decimal(response.json()["total"]) == Decimal("115.00")

    def test_reconcile_corrects_stale_total(self, sample_order_data):
        response = client.post("/orders/reconcile", json={**sample_order_data, "reported_total": 110})
        assert response.status_code == 200
        data = response.json()
        assert data["corrected"] is True
        assert Decimal(data["order"]["reported_total"]) == Decimal("115.00")

    def test_revenue_split_uses_configured_fees(self, sample_order_data):
        response = client.post("/orders/revenue-split", json={"order": sample_order_data})
        assert response.status_code == 200
        assert Decimal(response.json()["seller_payout"]) == Decimal("90.00")

    def test_revenue_split_with_custom_fees(self, sample_order_data):
        response = client.post("/orders/revenue-split", json={
            "order": sample_order_data,
            "fee_schedule": {"platform_fee_rate": "0.20", "logistics_fee_rate": "0"},
        })
        assert response.status_code == 200
        assert Decimal(response.json()["seller_payout"]) == Decimal("85.00")

    def test_shipping_distribution(self):
        response = client.post("/orders/shipping-distribution", json={"total_shipping": 10, "seller_ids": [1]})
        assert response.status_code == 200
        assert Decimal(response.json()["platform_retained"]) == Decimal("2.00")

    def test_negative_quantity_rejected(self):
        response = client.post("/orders/totals", json={
            "line_items": [{"product_id": 1, "quantity": -1, "unit_price": 10}]
        })
        assert response.status_code == 422
