"""
Thin Razorpay REST client.

The booking engine hands it rupee totals; conversion to paise happens here and
nowhere else.
"""
import hashlib
import hmac
import logging
from typing import Optional

import requests

import config
from errors import PaymentGatewayError

logger = logging.getLogger(__name__)


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, base_url: str = config.RAZORPAY_BASE_URL, timeout: int = 10):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> Optional["RazorpayClient"]:
        if not (config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET):
            return None
        return cls(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET, config.RAZORPAY_BASE_URL)

    def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            r = requests.post(url, json=payload, auth=(self.key_id, self.key_secret), timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except requests.RequestException as e:
            logger.error("Razorpay request to %s failed: %s", path, e)
            raise PaymentGatewayError(f"Payment gateway error: {str(e)[:120]}")

    def create_order(self, amount: int, receipt: str, notes: Optional[dict] = None) -> dict:
        payload = {
            "amount": int(amount) * 100,
            "currency": "INR",
            "receipt": receipt,
            "notes": notes or {},
        }
        return self._post("/orders", payload)

    def refund(self, payment_id: str, amount: int, notes: Optional[dict] = None) -> dict:
        payload = {"amount": int(amount) * 100, "notes": notes or {}}
        return self._post(f"/payments/{payment_id}/refund", payload)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = hmac.new(
            self.key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature or "")
