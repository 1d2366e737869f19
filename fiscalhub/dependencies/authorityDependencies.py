from typing import Annotated
from fastapi import Depends

from fiscalhub.core.config import settings
from fiscalhub.modules.fiscal_documents.client import AuthorityClient


def get_authority_client() -> AuthorityClient:
    """Cliente del gateway de la autoridad configurado desde Settings"""
    return AuthorityClient(
        base_url=settings.AUTHORITY_API_URL,
        token=settings.AUTHORITY_API_TOKEN,
        timeout=settings.AUTHORITY_TIMEOUT_SECONDS
    )


authority_client_dependency = Annotated[AuthorityClient, Depends(get_authority_client)]
