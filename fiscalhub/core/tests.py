"""
Tests de comparación con tolerancia y configuración financiera
"""

import pytest
from decimal import Decimal
from pydantic import ValidationError

from fiscalhub.core.config import FinancialConfig, Settings, ToleranceConfig
from fiscalhub.core.tolerance import ToleranceComparator, ToleranceDomain, round_money, to_decimal


class TestToDecimal:

    def test_float_goes_through_str(self):
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(115.0006) == Decimal("115.0006")

    def test_decimal_and_int_pass_through(self):
        assert to_decimal(Decimal("1.50")) == Decimal("1.50")
        assert to_decimal(3) == Decimal("3")

    def test_bool_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(True)

    def test_round_money_half_up(self):
        assert round_money("2.345") == Decimal("2.35")
        assert round_money("2.344") == Decimal("2.34")
        assert round_money(15) == Decimal("15.00")


class TestToleranceCompare:
    """|a - b| <= epsilon con borde inclusivo"""

    def test_within_tolerance(self):
        assert ToleranceComparator.compare("115.0006", "115.00", "0.001") is True

    def test_outside_tolerance(self):
        assert ToleranceComparator.compare("115.0011", "115.00", "0.001") is False
        assert ToleranceComparator.compare("110.00", "115.00", "0.001") is False

    def test_boundary_is_inclusive(self):
        assert ToleranceComparator.compare("100.001", "100.000", "0.001") is True
        assert ToleranceComparator.compare("100.000", "100.001", "0.001") is True

    def test_symmetric(self):
        assert ToleranceComparator.compare(1.0005, 1, 0.001) == ToleranceComparator.compare(1, 1.0005, 0.001)

    def test_float_noise_is_tolerated(self):
        # 0.1 + 0.2 = 0.30000000000000004 en binario
        assert ToleranceComparator.compare(0.1 + 0.2, 0.3, "0.001") is True

    @pytest.mark.parametrize("epsilon", ["0", "-0.001"])
    def test_epsilon_must_be_positive(self, epsilon):
        with pytest.raises(ValueError):
            ToleranceComparator.compare(1, 1, epsilon)


class TestToleranceDomains:

    def test_epsilon_per_domain(self):
        comparator = ToleranceComparator(ToleranceConfig(
            price=Decimal("0.01"), subtotal=Decimal("0.02"), tax=Decimal("0.03"), checkout=Decimal("0.001")
        ))
        assert comparator.epsilon_for(ToleranceDomain.PRICE) == Decimal("0.01")
        assert comparator.epsilon_for(ToleranceDomain.SUBTOTAL) == Decimal("0.02")
        assert comparator.epsilon_for(ToleranceDomain.TAX) == Decimal("0.03")
        assert comparator.epsilon_for("checkout") == Decimal("0.001")

    def test_domains_are_independent(self):
        comparator = ToleranceComparator(ToleranceConfig(price=Decimal("0.01"), checkout=Decimal("0.001")))
        assert comparator.equals("10.005", "10.00", ToleranceDomain.PRICE) is True
        assert comparator.equals("10.005", "10.00", ToleranceDomain.CHECKOUT) is False


class TestFinancialConfig:

    def test_defaults(self):
        config = FinancialConfig()
        assert config.tax_rate == Decimal("0.15")
        assert config.fees.platform_fee_rate == Decimal("0.10")
        assert config.fees.logistics_fee_rate == Decimal("0.05")
        assert config.max_retries == 12
        assert config.tolerances.checkout == Decimal("0.001")

    def test_zero_tolerance_rejected(self):
        with pytest.raises(ValidationError):
            ToleranceConfig(checkout=Decimal("0"))

    def test_settings_build_financial_config(self):
        settings = Settings(TAX_RATE=Decimal("0.12"), CHECKOUT_TOLERANCE=Decimal("0.005"), MAX_RETRIES=5)
        config = settings.financial_config()
        assert config.tax_rate == Decimal("0.12")
        assert config.tolerances.checkout == Decimal("0.005")
        assert config.max_retries == 5

    def test_settings_reject_non_positive_tolerance(self):
        with pytest.raises(ValidationError):
            Settings(TAX_TOLERANCE=Decimal("0"))

    def test_database_url_override(self):
        assert Settings(DATABASE_URL="sqlite://").database_url == "sqlite://"
        url = Settings(DATABASE_URL=None, POSTGRES_HOST="db").database_url
        assert url.startswith("postgresql+psycopg2://") and "@db:" in url

    def test_debug_parsing(self):
        assert Settings(DEBUG="false").DEBUG is False
        assert Settings(DEBUG='"true"').DEBUG is True
