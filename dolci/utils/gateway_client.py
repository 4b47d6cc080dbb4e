from __future__ import annotations

import hashlib
import hmac

import requests
from flask import current_app


def _secret() -> str:
    return (current_app.config.get("GATEWAY_SECRET") or "").strip()


def sign(raw_body: bytes) -> str:
    return hmac.new(_secret().encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None) -> bool:
    if not _secret() or not signature_header:
        return False
    return hmac.compare_digest(sign(raw_body), signature_header.strip())


def initialize_checkout(payment, callback_url: str = "") -> dict:
    """Ask the gateway for a hosted checkout page. The payment id travels as
    metadata and comes back on the capture webhook."""
    base = (current_app.config.get("GATEWAY_BASE_URL") or "").rstrip("/")
    secret = _secret()
    if not base or not secret:
        return {"ok": False, "error": "gateway not configured"}
    url = f"{base}/checkout/initialize"
    headers = {"Authorization": f"Bearer {secret}", "Content-Type": "application/json"}
    payload = {
        "amount": str(payment.amount),
        "currency": payment.currency,
        "metadata": {"payment_id": int(payment.id), "booking_id": int(payment.booking_id)},
    }
    if callback_url:
        payload["callback_url"] = callback_url
    timeout = int(current_app.config.get("GATEWAY_TIMEOUT_SECONDS", 20))
    try:
        r = requests.post(url, headers=headers, json=payload, timeout=timeout)
        j = r.json() if r.content else {}
        if 200 <= r.status_code < 300 and j.get("status") is True:
            data = j.get("data") or {}
            return {"ok": True, "checkout_url": data.get("checkout_url", ""), "reference": data.get("reference", "")}
        return {"ok": False, "error": j.get("message") or f"HTTP {r.status_code}"}
    except (requests.RequestException, ValueError) as e:
        current_app.logger.warning("checkout initialisation failed for payment %s: %s", payment.id, e)
        return {"ok": False, "error": str(e)}
