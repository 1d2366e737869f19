from typing import Annotated
from fastapi import Depends

from fiscalhub.core.config import FinancialConfig, settings


def get_financial_config() -> FinancialConfig:
    """Configuración financiera resuelta una vez por request"""
    return settings.financial_config()


financial_config_dependency = Annotated[FinancialConfig, Depends(get_financial_config)]
