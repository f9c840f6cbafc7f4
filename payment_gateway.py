"""
Payment gateway client (Razorpay Orders API).

Two responsibilities:
  - create an order for an amount/currency before the browser checkout
  - verify the signatures the gateway attaches to checkout callbacks and
    server-to-server webhooks

The browser callback is untrusted input: a checkout only counts as paid
when HMAC-SHA256("<order_id>|<payment_id>", key_secret) matches the
signature it carries.
"""

import hashlib
import hmac
import logging
import os
import time
from typing import Optional

import requests

from errors import PaymentGatewayError
from ps_trace import get_trace

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"


def compute_signature(message: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _signatures_match(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected, provided.strip())


class RazorpayClient:
    """Thin REST client for the gateway's Orders API."""

    DEFAULT_TIMEOUT = 10

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.key_id = key_id if key_id is not None else os.environ.get("RAZORPAY_KEY_ID", "")
        self.key_secret = (
            key_secret if key_secret is not None else os.environ.get("RAZORPAY_KEY_SECRET", "")
        )
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None
            else os.environ.get("RAZORPAY_WEBHOOK_SECRET", "")
        )
        self.session = requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
        """Create a gateway order. Returns the gateway's order payload (has 'id')."""
        if not self.configured:
            raise PaymentGatewayError("Payment gateway is not configured")
        payload = {
            "amount": int(amount_minor),
            "currency": currency,
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        t0 = time.time()
        try:
            resp = self.session.post(
                f"{RAZORPAY_API_BASE}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.DEFAULT_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.error("Gateway order creation failed: %s", e)
            raise PaymentGatewayError("Payment gateway unreachable") from e

        trace = get_trace()
        if trace:
            trace.record_call("razorpay", "orders", int((time.time() - t0) * 1000),
                              resp.status_code, "OK" if resp.ok else "ERROR")
        if not resp.ok:
            logger.error("Gateway rejected order (HTTP %d): %s", resp.status_code, resp.text[:300])
            raise PaymentGatewayError(f"Payment gateway rejected the order (HTTP {resp.status_code})")
        try:
            order = resp.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment gateway returned invalid JSON") from e
        if not order.get("id"):
            raise PaymentGatewayError("Payment gateway response missing order id")
        return order

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        """Check the checkout callback signature over 'order_id|payment_id'."""
        if not self.key_secret or not order_id or not payment_id:
            return False
        expected = compute_signature(f"{order_id}|{payment_id}".encode(), self.key_secret)
        return _signatures_match(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check a webhook's X-Razorpay-Signature over the raw request body."""
        if not self.webhook_secret:
            return False
        expected = compute_signature(body, self.webhook_secret)
        return _signatures_match(expected, signature)
