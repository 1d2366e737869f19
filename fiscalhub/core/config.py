from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional


class ToleranceConfig(BaseModel):
    """Tolerancias por dominio de comparación (todas deben ser mayores a 0)"""
    price: Decimal = Field(Decimal("0.001"), gt=0)
    subtotal: Decimal = Field(Decimal("0.001"), gt=0)
    tax: Decimal = Field(Decimal("0.001"), gt=0)
    checkout: Decimal = Field(Decimal("0.001"), gt=0)


class FeeSchedule(BaseModel):
    """Comisiones cobradas al vendedor, como fracción del subtotal del vendedor"""
    platform_fee_rate: Decimal = Field(Decimal("0.10"), ge=0, le=1)
    logistics_fee_rate: Decimal = Field(Decimal("0.05"), ge=0, le=1)


class FinancialConfig(BaseModel):
    """
    Configuración financiera inyectada en cada motor de cálculo.

    Se construye una vez por proceso/request desde Settings; los motores
    nunca leen configuración global.
    """
    tax_rate: Decimal = Field(Decimal("0.15"), ge=0, le=1)
    tolerances: ToleranceConfig = Field(default_factory=ToleranceConfig)
    fees: FeeSchedule = Field(default_factory=FeeSchedule)
    shipping_seller_percentage: Decimal = Field(Decimal("80"), ge=0, le=100)
    shipping_max_seller_percentage: Decimal = Field(Decimal("40"), ge=0, le=100)
    max_retries: int = Field(12, ge=0)


class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'fiscal_user'
    POSTGRES_PASSWORD: str = 'fiscal_pass'
    POSTGRES_DB: str = 'fiscal_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Override completo (ej. sqlite para pruebas)

    # Redis settings (broker de Celery)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Tax authority gateway
    AUTHORITY_API_URL: str = 'http://localhost:3100/api'
    AUTHORITY_API_TOKEN: str = ''
    AUTHORITY_TIMEOUT_SECONDS: float = 30.0

    # Financial settings
    TAX_RATE: Decimal = Decimal('0.15')  # IVA vigente
    PRICE_COMPARISON_TOLERANCE: Decimal = Decimal('0.001')
    SUBTOTAL_TOLERANCE: Decimal = Decimal('0.001')
    TAX_TOLERANCE: Decimal = Decimal('0.001')
    CHECKOUT_TOLERANCE: Decimal = Decimal('0.001')
    PLATFORM_FEE_RATE: Decimal = Decimal('0.10')
    LOGISTICS_FEE_RATE: Decimal = Decimal('0.05')
    SHIPPING_SELLER_PERCENTAGE: Decimal = Decimal('80')
    SHIPPING_MAX_SELLER_PERCENTAGE: Decimal = Decimal('40')

    # Fiscal documents
    MAX_RETRIES: int = 12
    STATUS_SYNC_INTERVAL_SECONDS: float = 300.0

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    def financial_config(self) -> FinancialConfig:
        """Construir el valor de configuración financiera que se inyecta a los motores"""
        return FinancialConfig(
            tax_rate=self.TAX_RATE,
            tolerances=ToleranceConfig(
                price=self.PRICE_COMPARISON_TOLERANCE,
                subtotal=self.SUBTOTAL_TOLERANCE,
                tax=self.TAX_TOLERANCE,
                checkout=self.CHECKOUT_TOLERANCE,
            ),
            fees=FeeSchedule(
                platform_fee_rate=self.PLATFORM_FEE_RATE,
                logistics_fee_rate=self.LOGISTICS_FEE_RATE,
            ),
            shipping_seller_percentage=self.SHIPPING_SELLER_PERCENTAGE,
            shipping_max_seller_percentage=self.SHIPPING_MAX_SELLER_PERCENTAGE,
            max_retries=self.MAX_RETRIES,
        )

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator(
        "PRICE_COMPARISON_TOLERANCE", "SUBTOTAL_TOLERANCE", "TAX_TOLERANCE", "CHECKOUT_TOLERANCE"
    )
    @classmethod
    def validate_tolerance(cls, v):
        if v <= 0:
            raise ValueError('La tolerancia debe ser mayor a 0')
        return v


settings = Settings()
