"""HTTP client for the remote component store."""

from __future__ import annotations

import logging
from typing import Any

import requests

from measure_library.api.resilience import RETRYABLE_EXCEPTIONS, CircuitBreaker, make_api_call_with_retry
from measure_library.core.config import RemoteConfig, RetryConfig
from measure_library.core.constants import RETRYABLE_STATUS_CODES
from measure_library.core.exceptions import CircuitBreakerOpen, RemoteStoreError, RetryableHTTPError


class RemoteComponentClient:
    """Thin CRUD wrapper around the ``/components`` endpoints.

    Every request carries ``RemoteConfig.timeout_seconds``; transient
    failures are retried per ``RetryConfig`` and all failures surface as
    ``RemoteStoreError`` (or ``CircuitBreakerOpen`` while the circuit is open).
    Payloads are plain JSON dictionaries.
    """

    def __init__(
        self,
        config: RemoteConfig | None = None,
        retry_config: RetryConfig | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        session: requests.Session | None = None,
        logger: logging.Logger | None = None,
    ):
        self.config = config or RemoteConfig()
        self.retry_config = retry_config or RetryConfig()
        self.circuit_breaker = circuit_breaker
        self.logger = logger or logging.getLogger(__name__)
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})
        if self.config.api_token:
            self.session.headers["Authorization"] = f"Bearer {self.config.api_token}"

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, operation: str, payload: Any = None, params: dict | None = None):
        response = self.session.request(
            method,
            self._url(path),
            json=payload,
            params=params,
            timeout=self.config.timeout_seconds,
        )
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise RetryableHTTPError(response.status_code, response.reason or "")
        if response.status_code >= 400:
            raise RemoteStoreError(
                "Remote store rejected request",
                status_code=response.status_code,
                operation=operation,
                details=(response.text or "")[:500] or None,
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteStoreError(
                "Remote store returned invalid JSON", status_code=response.status_code, operation=operation
            ) from e

    def _request(
        self, method: str, path: str, operation: str, payload: Any = None, params: dict | None = None
    ) -> Any:
        try:
            return make_api_call_with_retry(
                self._send,
                method,
                path,
                operation,
                payload,
                params,
                retry_config=self.retry_config,
                logger=self.logger,
                operation_name=operation,
                circuit_breaker=self.circuit_breaker,
            )
        except (RemoteStoreError, CircuitBreakerOpen):
            raise
        except RETRYABLE_EXCEPTIONS as e:
            status_code = e.status_code if isinstance(e, RetryableHTTPError) else None
            raise RemoteStoreError(
                "Remote store unavailable",
                status_code=status_code,
                operation=operation,
                details=str(e),
                original_error=e,
            ) from e

    # ==================== READS ====================

    def list_component_summaries(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        data = self._request("GET", "/components", "listComponentSummaries", params=params)
        if isinstance(data, dict):
            data = data.get("content") or data.get("components") or []
        return list(data or [])

    def get_component(self, component_id: str) -> dict[str, Any]:
        return self._request("GET", f"/components/{component_id}", "getComponent")

    # ==================== WRITES ====================

    def create_atomic_component(self, dto: dict[str, Any]) -> dict[str, Any] | None:
        return self._request("POST", "/components/atomic", "createAtomicComponent", payload=dto)

    def create_composite_component(self, dto: dict[str, Any]) -> dict[str, Any] | None:
        return self._request("POST", "/components/composite", "createCompositeComponent", payload=dto)

    def update_component(self, component_id: str, dto: dict[str, Any]) -> dict[str, Any] | None:
        return self._request("PUT", f"/components/{component_id}", "updateComponent", payload=dto)

    def delete_component(self, component_id: str) -> None:
        self._request("DELETE", f"/components/{component_id}", "deleteComponent")

    def archive_component(self, component_id: str, superseded_by: str | None = None) -> dict[str, Any] | None:
        payload = {"supersededBy": superseded_by} if superseded_by else {}
        return self._request("POST", f"/components/{component_id}/archive", "archiveComponent", payload=payload)

    def approve_component(self, component_id: str, approved_by: str) -> dict[str, Any] | None:
        return self._request(
            "POST", f"/components/{component_id}/approve", "approveComponent", payload={"approvedBy": approved_by}
        )

    def record_usage(self, component_id: str, measure_id: str) -> dict[str, Any] | None:
        return self._request(
            "POST", f"/components/{component_id}/usage", "recordUsage", payload={"measureId": measure_id}
        )

    def close(self) -> None:
        self.session.close()
