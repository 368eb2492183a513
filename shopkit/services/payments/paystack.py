"""
Paystack client wrapper using httpx sync client.
Every call has a bounded timeout and goes through the `paystack` circuit breaker.
"""
import logging
import time
from typing import Any
from urllib.parse import quote

import httpx
import pybreaker

from shopkit.core.config import settings
from shopkit.services.payments.errors import (
    PaystackError,
    PaystackResponseError,
    PaystackTimeoutError,
    PaystackUnavailableError,
)
from shopkit.utils.metrics import paystack_request_duration_seconds, paystack_requests_total

logger = logging.getLogger(__name__)


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        breaker: pybreaker.CircuitBreaker | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._breaker = breaker
        self._client = client

    @classmethod
    def from_settings(cls) -> "PaystackClient":
        from shopkit.services.circuit_breaker import get_circuit_breaker

        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout_seconds,
            breaker=get_circuit_breaker("paystack"),
        )

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()

    def verify_transaction(self, reference: str) -> dict[str, Any]:
        """GET /transaction/verify/{reference}; returns the `data` object."""
        return self._call("GET", "verify", f"/transaction/verify/{quote(reference, safe='')}")

    def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str | None = None,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
        channels: list[str] | None = None,
    ) -> dict[str, Any]:
        """POST /transaction/initialize; returns `{authorization_url, access_code, reference}`."""
        body: dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata or {},
        }
        if currency:
            body["currency"] = currency
        if callback_url:
            body["callback_url"] = callback_url
        if channels:
            body["channels"] = channels
        return self._call("POST", "initialize", "/transaction/initialize", json=body)

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Accept": "application/json",
        }
        return self.client.request(method, url, headers=headers, timeout=self._timeout, **kwargs)

    def _call(self, method: str, endpoint: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        start = time.time()
        try:
            if self._breaker is not None:
                response = self._breaker.call(self._send, method, url, **kwargs)
            else:
                response = self._send(method, url, **kwargs)
        except pybreaker.CircuitBreakerError as e:
            self._record(endpoint, "breaker_open", start)
            raise PaystackUnavailableError("paystack circuit breaker is open") from e
        except httpx.TimeoutException as e:
            self._record(endpoint, "timeout", start)
            logger.warning("paystack_timeout", extra={"path": path, "error": str(e)})
            raise PaystackTimeoutError(f"paystack {endpoint} timed out") from e
        except httpx.HTTPError as e:
            self._record(endpoint, "error", start)
            logger.warning("paystack_transport_error", extra={"path": path, "error": str(e)})
            raise PaystackError(f"paystack {endpoint} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not body.get("status"):
            self._record(endpoint, str(response.status_code), start)
            message = (body or {}).get("message") if isinstance(body, dict) else None
            logger.warning(
                "paystack_bad_response",
                extra={"path": path, "status_code": response.status_code, "error": message},
            )
            raise PaystackResponseError(
                message or f"paystack {endpoint} returned {response.status_code}",
                status_code=response.status_code,
                body=body if isinstance(body, dict) else None,
            )

        self._record(endpoint, "success", start)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _record(endpoint: str, status: str, start: float) -> None:
        paystack_requests_total.labels(endpoint=endpoint, status=status).inc()
        paystack_request_duration_seconds.labels(endpoint=endpoint).observe(time.time() - start)
