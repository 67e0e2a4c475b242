"""
Client for the Paystack-compatible payment gateway.

Only the external contract is modeled: initialize a transaction, verify it,
and check the signature on webhook notifications.
"""
import hashlib
import hmac
from typing import Any, Dict, Optional

import requests
import structlog

from apps.core.exceptions import GatewayError
from apps.core.monitoring import GatewayMetricsContext
from apps.core.settings import settings

logger = structlog.get_logger(__name__)


class PaymentGatewayClient:
    """Synchronous gateway client. Every call carries a timeout."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None
    ):
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.http = http or requests.Session()

    def initialize(
        self,
        email: str,
        amount_minor: int,
        metadata: Dict[str, Any],
        callback_url: str,
        webhook_url: Optional[str] = None,
        reference: Optional[str] = None
    ) -> Dict[str, str]:
        """Open a transaction and return its checkout URL and reference."""
        body: Dict[str, Any] = {
            "email": email,
            "amount": int(amount_minor),
            "currency": settings.currency,
            "metadata": metadata,
            "callback_url": callback_url,
        }
        if webhook_url:
            body["webhook_url"] = webhook_url
        if reference:
            body["reference"] = reference

        data = self._request("POST", "/transaction/initialize", "initialize", json=body)
        if not data.get("authorization_url"):
            raise GatewayError("initialize", "response did not include an authorization URL")

        logger.info("Gateway transaction initialized", reference=data.get("reference", reference))
        return {
            "authorization_url": data["authorization_url"],
            "reference": data.get("reference") or reference,
        }

    def verify(self, reference: str) -> Dict[str, Any]:
        """Fetch the gateway's view of a transaction."""
        data = self._request("GET", f"/transaction/verify/{reference}", "verify")
        return {
            "status": data.get("status", ""),
            "amount_minor": int(data.get("amount") or 0),
            "metadata": data.get("metadata"),
            "reference": data.get("reference", reference),
        }

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Check the HMAC-SHA512 hex digest of the exact request body."""
        if not signature or not self.secret_key:
            return False
        return hmac.compare_digest(self.sign(raw_body), signature.strip())

    def _request(self, method: str, path: str, operation: str, json: Optional[dict] = None) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            with GatewayMetricsContext(operation):
                response = self.http.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    headers=headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                payload = response.json()
        except requests.Timeout:
            logger.warning("Gateway request timed out", operation=operation, timeout=self.timeout)
            raise GatewayError(operation, "request timed out")
        except requests.RequestException as e:
            logger.warning("Gateway request failed", operation=operation, error=str(e))
            raise GatewayError(operation, str(e))
        except ValueError:
            raise GatewayError(operation, "response was not valid JSON")

        if not payload.get("status"):
            raise GatewayError(operation, payload.get("message") or "gateway rejected the request")
        return payload.get("data") or {}
