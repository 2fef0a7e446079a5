from typing import Any, Dict, Optional

import requests

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"


class RazorpayApi:
    """Minimal Razorpay REST client (basic auth with key id / key secret)."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API_BASE, timeout: int = 10):
        self._auth = (key_id, key_secret)
        self._base = base_url.rstrip("/")
        self._timeout = timeout

    def capture_payment(self, payment_id: str, amount: int, currency: str) -> Dict[str, Any]:
        if not payment_id:
            raise ValueError("Missing payment_id")
        resp = requests.post(
            f"{self._base}/payments/{payment_id}/capture",
            auth=self._auth,
            json={"amount": int(amount), "currency": currency},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        if not payment_id:
            raise ValueError("Missing payment_id")
        resp = requests.get(
            f"{self._base}/payments/{payment_id}",
            auth=self._auth,
            timeout=self._timeout,
        )
        resp.raise_for_status()
        return resp.json()


def api_from_settings(settings) -> Optional[RazorpayApi]:
    if not (settings.razorpay_key_id and settings.razorpay_key_secret):
        return None
    return RazorpayApi(settings.razorpay_key_id, settings.razorpay_key_secret)
