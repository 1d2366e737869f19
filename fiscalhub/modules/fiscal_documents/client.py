"""
Cliente HTTP del gateway de la autoridad tributaria (SRI)

Todas las respuestas del gateway pueden venir envueltas como
{success, message, data}; los modelos aceptan nombres en inglés y en español.
"""

from typing import Any, Dict, Optional
import logging

import httpx
from pydantic import ValidationError

from fiscalhub.common.exceptions import AuthorityClientError, SubmissionError, TransientSyncError
from fiscalhub.modules.fiscal_documents.models import DocumentType
from fiscalhub.modules.fiscal_documents.schemas import (
    FiscalStats, RetryResult, StatusQueryResult, SubmissionResult
)

logger = logging.getLogger(__name__)

RENDERING_FORMATS = ("pdf", "xml")


class AuthorityClient:
    class Paths:
        class Invoices:
            root: str = '/invoices'
            admin: str = '/admin/invoices'
            stats: str = f'{admin}/stats/overview'

        class CreditNotes:
            root: str = '/credit-notes'
            admin: str = '/admin/credit-notes'
            stats: str = f'{admin}/stats/overview'

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.transport = transport
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if token:
            self.headers['Authorization'] = f'Bearer {token}'

    @classmethod
    def paths_for(cls, document_type: DocumentType):
        if DocumentType(document_type) == DocumentType.CREDIT_NOTE:
            return cls.Paths.CreditNotes
        return cls.Paths.Invoices

    async def _send(
        self,
        method: str,
        path: str,
        payload: Optional[Dict] = None,
        query_params: Optional[Dict] = None,
    ) -> httpx.Response:
        url = f'{self.base_url}{path}'
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = await client.request(
                    method, url, params=query_params, headers=self.headers, json=payload
                )
        except httpx.TimeoutException as e:
            exception = TransientSyncError(msg=f'Timeout contra la autoridad: {e}', url=url, payload=payload)
            logger.error(str(exception))
            raise exception
        except httpx.TransportError as e:
            exception = TransientSyncError(msg=f'Error de red contra la autoridad: {e}', url=url, payload=payload)
            logger.error(str(exception))
            raise exception

        if response.status_code >= 500:
            exception = TransientSyncError(
                msg=f'La autoridad respondió {response.status_code}', url=url, payload=payload,
                response={'status_code': response.status_code, 'content': response.text}
            )
            logger.error(str(exception))
            raise exception
        if response.status_code >= 400:
            exception = SubmissionError(
                msg=self._error_message(response) or f'La autoridad respondió {response.status_code}',
                url=url, payload=payload,
                response={'status_code': response.status_code, 'content': response.text}
            )
            logger.error(str(exception))
            raise exception
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            return body.get('message') or body.get('detail') or body.get('mensaje')
        return None

    async def _request_json(
        self,
        method: str,
        path: str,
        payload: Optional[Dict] = None,
        query_params: Optional[Dict] = None,
    ) -> Any:
        response = await self._send(method, path, payload, query_params)
        try:
            body = response.json()
        except (ValueError, httpx.DecodingError):
            exception = AuthorityClientError(
                msg='Respuesta de la autoridad no es JSON', url=str(response.request.url), payload=payload,
                response={'status_code': response.status_code, 'content': response.text}
            )
            logger.error(str(exception))
            raise exception
        return self._unwrap(body)

    @staticmethod
    def _unwrap(body: Any) -> Any:
        # {success, message, data} -> data
        if isinstance(body, dict) and 'data' in body and ('success' in body or 'message' in body):
            return body['data']
        return body

    def _parse(self, model, data: Any, url: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            msg = f'{type(e).__name__} {model.__name__}'
            msg += f'\n{repr(e.errors())}'
            exception = AuthorityClientError(url=url, response=data, msg=msg)
            logger.error(str(exception))
            raise exception

    async def submit_document(self, document_type: DocumentType, payload: Dict) -> SubmissionResult:
        path = self.paths_for(document_type).root
        data = await self._request_json('POST', path, payload=payload)
        return self._parse(SubmissionResult, data, path)

    async def retry_document(self, document_type: DocumentType, document_id: str) -> RetryResult:
        path = f'{self.paths_for(document_type).admin}/{document_id}/retry'
        data = await self._request_json('POST', path)
        return self._parse(RetryResult, data, path)

    async def query_status(self, document_type: DocumentType, document_id: str) -> StatusQueryResult:
        path = f'{self.paths_for(document_type).admin}/{document_id}/check-status'
        data = await self._request_json('GET', path)
        return self._parse(StatusQueryResult, data, path)

    async def fetch_stats(self, document_type: DocumentType) -> FiscalStats:
        path = self.paths_for(document_type).stats
        data = await self._request_json('GET', path)
        return self._parse(FiscalStats, data, path)

    async def download_rendering(self, document_type: DocumentType, document_id: str, format: str = 'pdf') -> bytes:
        if format not in RENDERING_FORMATS:
            raise ValueError(f'Formato no soportado: {format}')
        path = f'{self.paths_for(document_type).admin}/{document_id}/download-{format}'
        response = await self._send('GET', path)
        return response.content
