"""Fanbases public API client"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from paygate.core.config import settings, FANBASES_API_URL
from paygate.core.errors import ProcessorError, RebillingNotAllowed

logger = logging.getLogger(__name__)

# Fanbases reports this (and no structured code) when a stored card may not be charged without the buyer
REBILLING_NOT_ALLOWED_MESSAGE = "Manual rebilling is not allowed"
REBILLING_NOT_ALLOWED_CODE = "manual_rebilling_not_allowed"


@dataclass
class CheckoutSessionResponse:
    checkout_session_id: str
    payment_link: str


@dataclass
class ChargeResponse:
    charge_id: str
    raw: Dict[str, Any]


class FanbasesClient:
    """Thin wrapper over the Fanbases REST API.

    Every call carries the configured timeout; failures surface as
    ``ProcessorError`` and are never retried here.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None
    ):
        self.api_key = api_key if api_key is not None else settings.FANBASES_API_KEY
        self.api_url = (api_url or FANBASES_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.FANBASES_TIMEOUT_SECONDS
        self._http = http_client

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "x-api-key": self.api_key
        }

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.api_key:
            raise ProcessorError("Payment system not configured", status_code=500)

        url = f"{self.api_url}{path}"
        try:
            if self._http is not None:
                response = self._http.request(method, url, headers=self._headers(), json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.request(method, url, headers=self._headers(), json=payload)
        except httpx.TimeoutException:
            logger.error(f"Fanbases {method} {path} timed out after {self.timeout}s")
            raise ProcessorError("Payment provider timed out", details={"path": path})
        except httpx.RequestError as e:
            logger.error(f"Fanbases {method} {path} failed: {e}")
            raise ProcessorError("Payment provider unreachable", details={"path": path})

        try:
            data = response.json() if response.text and response.text.strip() else {}
        except json.JSONDecodeError:
            preview = response.text[:500]
            logger.error(f"Fanbases {method} {path} returned non-JSON (HTTP {response.status_code}): {preview}")
            raise ProcessorError("Invalid response from payment provider", details={"http_status": response.status_code})

        if response.status_code >= 400 or (isinstance(data, dict) and data.get("status") == "error"):
            message = (data.get("message") if isinstance(data, dict) else None) or f"HTTP {response.status_code}"
            code = data.get("code") if isinstance(data, dict) else None
            details = {"http_status": response.status_code, "path": path}
            if code == REBILLING_NOT_ALLOWED_CODE or REBILLING_NOT_ALLOWED_MESSAGE in message:
                logger.info(f"Fanbases refused rebilling on {path}")
                raise RebillingNotAllowed(message, details=details)
            logger.error(f"Fanbases {method} {path} rejected (HTTP {response.status_code}): {message}")
            raise ProcessorError(message, details=details)

        return data if isinstance(data, dict) else {"data": data}

    def create_checkout_session(
        self,
        product_id: str,
        metadata: Dict[str, Any],
        success_url: str,
        cancel_url: str,
        webhook_url: str,
        recurrence: Optional[Dict[str, Any]] = None
    ) -> CheckoutSessionResponse:
        """Open a hosted checkout; metadata is echoed back on the redirect and webhook"""
        payload = {
            "product_id": product_id,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "webhook_url": webhook_url
        }
        if recurrence:
            payload["recurrence"] = recurrence

        data = self._request("POST", "/checkout-sessions", payload)
        body = data.get("data") or data
        session_id = body.get("checkout_session_id") or body.get("id")
        payment_link = body.get("payment_link") or body.get("url")
        if not session_id or not payment_link:
            raise ProcessorError("Checkout session response missing id or payment link")
        return CheckoutSessionResponse(checkout_session_id=str(session_id), payment_link=payment_link)

    def charge_customer(
        self,
        customer_id: str,
        payment_method_id: str,
        product_id: str,
        metadata: Dict[str, Any]
    ) -> ChargeResponse:
        """Charge a stored payment method directly"""
        data = self._request("POST", f"/customers/{customer_id}/charge", {
            "payment_method_id": payment_method_id,
            "product_id": product_id,
            "metadata": metadata
        })
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        charge_id = nested.get("charge_id") or data.get("charge_id") or data.get("id")
        if not charge_id:
            raise ProcessorError("Charge response missing charge id")
        return ChargeResponse(charge_id=str(charge_id), raw=data)

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/customers/{customer_id}/payment-methods")
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        return nested.get("payment_methods") or data.get("payment_methods") or []

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """First customer whose email matches, case-insensitively"""
        data = self._request("GET", "/customers?per_page=200")
        body = data.get("data")
        if isinstance(body, dict):
            customers = body.get("customers") or []
        elif isinstance(body, list):
            customers = body
        else:
            customers = data.get("customers") or []

        wanted = email.strip().lower()
        for customer in customers:
            if isinstance(customer, dict) and (customer.get("email") or "").strip().lower() == wanted:
                return customer
        return None


def get_fanbases_client() -> FanbasesClient:
    """FastAPI dependency"""
    return FanbasesClient()
