"""
PLATFORM CLIENT - read-only access to the remote low-code platform

Purpose:
    1. List applications and their tables (with field schemas)
    2. Run row searches that already passed validation
    3. Own timeouts and retry/backoff for remote calls

The registry never calls anything here that mutates remote data.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.core.errors import NotFoundError, PlatformError
from app.core.schemas import Application, OptimizedQuery, Table

logger = logging.getLogger(__name__)

API_PREFIX = "/api/public/v1"


def _is_retryable(error: BaseException) -> bool:
    # Network trouble, rate limiting and server errors are worth another try
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return isinstance(error, httpx.RequestError)


def _unwrap(body: Any) -> Any:
    # Responses come either bare or wrapped as {"data": ...}
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class PlatformClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_ms: int = 30000,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}{API_PREFIX}",
            timeout=timeout_ms / 1000,
            headers={
                "Content-Type": "application/json",
                "x-budibase-api-key": api_key,
            },
            event_hooks={"request": [self._log_request], "response": [self._log_response]},
            transport=transport,
        )

    @staticmethod
    async def _log_request(request: httpx.Request) -> None:
        logger.debug(f"Platform request: {request.method} {request.url.path}")

    @staticmethod
    async def _log_response(response: httpx.Response) -> None:
        logger.debug(
            f"Platform response: {response.status_code} {response.request.url.path}"
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        app_id: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"x-budibase-app-id": app_id} if app_id else None

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=8),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: logger.warning(
                f"Retrying {method} {path} (attempt {state.attempt_number}): "
                f"{state.outcome.exception()}"
            ),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.request(
                        method, path, json=json, headers=headers
                    )
                    response.raise_for_status()
        except httpx.HTTPStatusError as error:
            status = error.response.status_code
            message = self._error_message(error.response)
            logger.error(f"Platform error {status} on {method} {path}: {message}")
            if status == 404:
                raise NotFoundError(message) from error
            raise PlatformError(message, status_code=status) from error
        except httpx.TimeoutException as error:
            logger.error(f"Platform request timed out: {method} {path}")
            raise PlatformError(f"Request timed out: {error}", status_code=503) from error
        except httpx.RequestError as error:
            logger.error(f"Cannot reach platform: {method} {path}: {error}")
            raise PlatformError(f"Cannot connect to platform: {error}", status_code=503) from error

        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.reason_phrase

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as error:
            path = response.request.url.path
            logger.error(f"Platform sent a non-JSON body for {path}: {response.text[:200]!r}")
            raise PlatformError(
                f"Platform returned an unreadable response for {path}", status_code=502
            ) from error

    @staticmethod
    def _malformed(what: str, error: Exception) -> PlatformError:
        logger.error(f"Platform sent malformed {what}: {error}")
        return PlatformError(f"Platform returned malformed {what}", status_code=502)

    # =========================================================================
    # Applications
    # =========================================================================

    async def get_applications(self) -> List[Application]:
        """
        All applications visible to the API key.

        Dev app ids (app_dev_...) are turned into their published form,
        which is what the public API expects; the original id is kept as
        metadata_id.
        """
        response = await self._request("POST", "/applications/search", json={"name": ""})
        rows = _unwrap(self._json(response))

        apps = []
        try:
            for row in rows or []:
                raw_id = row.get("_id")
                apps.append(
                    Application.model_validate(
                        {
                            **row,
                            "_id": raw_id.replace("_dev_", "_") if raw_id else raw_id,
                            "_metadataId": raw_id,
                        }
                    )
                )
        except (ValidationError, AttributeError, TypeError) as error:
            raise self._malformed("application list", error) from error
        return apps

    async def get_application(self, app_id: str) -> Application:
        # The per-app endpoint is unreliable, so search and match locally
        for app in await self.get_applications():
            if (
                app.id == app_id
                or app.metadata_id == app_id
                or app.name.lower() == app_id.lower()
            ):
                return app
        raise NotFoundError(f"Application not found: {app_id}")

    # =========================================================================
    # Tables and rows
    # =========================================================================

    async def get_tables(self, app_id: str) -> List[Table]:
        response = await self._request(
            "POST", "/tables/search", json={"name": ""}, app_id=app_id
        )
        try:
            return [Table.model_validate(row) for row in _unwrap(self._json(response)) or []]
        except (ValidationError, TypeError) as error:
            raise self._malformed(f"table list for {app_id}", error) from error

    async def query_records(self, app_id: str, query: OptimizedQuery) -> Dict[str, Any]:
        """Run a validated search. The response is returned as the platform sent it."""
        response = await self._request(
            "POST",
            f"/tables/{query.table_id}/rows/search",
            json=query.to_payload(),
            app_id=app_id,
        )
        return self._json(response)

    async def check_connection(self) -> bool:
        try:
            await self._request("GET", "/metrics")
        except PlatformError as error:
            logger.warning(f"Platform connection failed: {error.to_user_message()}")
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()
