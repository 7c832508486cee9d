"""
HTTP client for the commerce backend (the payment processor of record).

One instance is constructed at startup with its own credential and base URL and
injected into the billing services; there is no module-level client. The
underlying httpx.AsyncClient is created lazily and pooled for the lifetime of
the instance, so the adapter is safe to share across concurrent requests.

Every call:
- carries the bearer credential and the owning organization's X-Org-ID header
  (commerce enforces tenant isolation on that header)
- is bounded by an explicit timeout
- maps non-2xx responses onto ErrorKind by status code
- validates the JSON body against the response model named by the caller

Caller cancellation propagates: cancelling the awaiting task cancels the
in-flight httpx request.
"""

import asyncio
import logging
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.services.processor.exceptions import (
    ErrorKind,
    ProcessorConfigurationError,
    ProcessorError,
    kind_for_status,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ORG_HEADER = "X-Org-ID"
RETRY_DELAYS = [0.5, 1.0, 2.0]  # Seconds between attempts


def _compact(params: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop unset values so optional fields are omitted from the wire."""
    if params is None:
        return None
    return {key: value for key, value in params.items() if value is not None}


def _error_message(response: httpx.Response) -> str:
    """Pull a human-readable message out of a commerce error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return f"HTTP {response.status_code}"


class CommerceClient:
    """Request/response adapter for the commerce REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        connect_timeout: float = 5.0,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.max_retries = max(0, min(max_retries, len(RETRY_DELAYS)))
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls) -> "CommerceClient":
        """Build the adapter from application settings."""
        return cls(
            base_url=settings.commerce_api_url,
            api_key=settings.commerce_api_key,
            timeout=settings.commerce_timeout_seconds,
            connect_timeout=settings.commerce_connect_timeout_seconds,
            max_retries=settings.commerce_max_retries,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
            logger.debug(f"[commerce] Created HTTP client for {self.base_url}")
        return self._client

    async def aclose(self) -> None:
        """Close the pooled HTTP client. Call on app shutdown."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("[commerce] Closed HTTP client")

    @staticmethod
    def _is_replay_safe(
        method: str,
        body: dict[str, Any] | None,
        query: dict[str, Any] | None,
    ) -> bool:
        """Reads are always safe to repeat; writes only with an op_id."""
        if method.upper() == "GET":
            return True
        return bool((body or {}).get("op_id") or (query or {}).get("op_id"))

    async def request(
        self,
        method: str,
        path: str,
        *,
        org_id: str,
        response_model: type[ModelT],
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> ModelT:
        """
        Send one request to commerce and validate the response.

        Raises:
            ProcessorConfigurationError: credential missing (never retried)
            ProcessorError: non-2xx status, timeout, transport failure or a
                payload that does not match response_model
        """
        if not self._api_key:
            raise ProcessorConfigurationError()

        body = _compact(body)
        query = _compact(query)
        attempts = 1 + (self.max_retries if self._is_replay_safe(method, body, query) else 0)
        last_error: ProcessorError | None = None

        for attempt in range(attempts):
            try:
                data = await self._send(method, path, org_id=org_id, body=body, query=query)
                return self._validate(method, path, data, response_model)
            except ProcessorError as e:
                last_error = e
                if not e.is_transient or attempt >= attempts - 1:
                    raise
                delay = RETRY_DELAYS[attempt]
                logger.warning(
                    f"[commerce] {method} {path} failed with {e.kind.value} "
                    f"(attempt {attempt + 1}/{attempts}), retrying in {delay}s: {e.message}"
                )
                await asyncio.sleep(delay)

        # Unreachable: the loop either returns or raises
        raise last_error or ProcessorError(ErrorKind.INTERNAL, "Commerce request failed")

    async def _send(
        self,
        method: str,
        path: str,
        *,
        org_id: str,
        body: dict[str, Any] | None,
        query: dict[str, Any] | None,
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
            ORG_HEADER: org_id,
        }
        try:
            response = await self._get_client().request(
                method.upper(),
                path,
                json=body,
                params=query,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProcessorError(
                ErrorKind.TIMEOUT,
                f"Commerce request timed out: {method.upper()} {path}",
            ) from e
        except httpx.RequestError as e:
            raise ProcessorError(
                ErrorKind.INTERNAL,
                f"Commerce request failed: {e}",
            ) from e

        if response.is_error:
            message = _error_message(response)
            logger.debug(f"[commerce] {method.upper()} {path} -> {response.status_code}: {message}")
            raise ProcessorError(
                kind_for_status(response.status_code),
                message,
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProcessorError(
                ErrorKind.INTERNAL,
                f"Commerce returned a non-JSON body for {method.upper()} {path}",
                status_code=response.status_code,
            ) from e

    @staticmethod
    def _validate(method: str, path: str, data: Any, response_model: type[ModelT]) -> ModelT:
        try:
            return response_model.model_validate(data)
        except ValidationError as e:
            logger.error(f"[commerce] Malformed response for {method.upper()} {path}: {e}")
            raise ProcessorError(
                ErrorKind.INTERNAL,
                f"Malformed commerce response for {method.upper()} {path}",
            ) from e

    # ─────────────────────────────────────────────────────────────────────────
    # Verb helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def get(
        self,
        path: str,
        *,
        org_id: str,
        response_model: type[ModelT],
        query: dict[str, Any] | None = None,
    ) -> ModelT:
        return await self.request(
            "GET", path, org_id=org_id, response_model=response_model, query=query
        )

    async def post(
        self,
        path: str,
        *,
        org_id: str,
        response_model: type[ModelT],
        body: dict[str, Any] | None = None,
    ) -> ModelT:
        return await self.request(
            "POST", path, org_id=org_id, response_model=response_model, body=body
        )

    async def patch(
        self,
        path: str,
        *,
        org_id: str,
        response_model: type[ModelT],
        body: dict[str, Any] | None = None,
    ) -> ModelT:
        return await self.request(
            "PATCH", path, org_id=org_id, response_model=response_model, body=body
        )

    async def delete(
        self,
        path: str,
        *,
        org_id: str,
        response_model: type[ModelT],
        query: dict[str, Any] | None = None,
    ) -> ModelT:
        return await self.request(
            "DELETE", path, org_id=org_id, response_model=response_model, query=query
        )
