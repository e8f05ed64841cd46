"""
services/earnings/gateway.py
RazorpayX payout transfers for approved teacher withdrawals.

Calls are synchronous (httpx.Client) so the same code path serves the API
(via asyncio.to_thread) and the Celery payment worker.
"""

import logging
from decimal import Decimal

import httpx
from pybreaker import CircuitBreakerError

from config.settings import settings
from shared.models.models import PayoutMethod, PayoutRequest
from shared.utils.resilience import circuit_breaker_manager, retry_transient

logger = logging.getLogger(__name__)

_MODES = {
    PayoutMethod.BANK_TRANSFER: ("bank_account", "IMPS"),
    PayoutMethod.MOBILE_MONEY: ("vpa", "UPI"),
    PayoutMethod.PAYPAL: ("wallet", "paypal"),
}


class PayoutGatewayError(Exception):
    pass


def is_configured() -> bool:
    return bool(settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET and settings.RAZORPAY_ACCOUNT_NUMBER)


def _build_payload(payout: PayoutRequest) -> dict:
    account_type, mode = _MODES[PayoutMethod(payout.payment_method)]
    details = payout.payment_details or {}
    return {
        "account_number": settings.RAZORPAY_ACCOUNT_NUMBER,
        "amount": int(Decimal(payout.amount) * 100),  # smallest currency unit
        "currency": payout.currency,
        "mode": mode,
        "purpose": "payout",
        "fund_account": {
            "account_type": account_type,
            "details": details,
            "contact": {"reference_id": str(payout.teacher_id), "type": "vendor"},
        },
        "reference_id": payout.request_uuid,
        "narration": f"Payout {payout.request_uuid}",
        "queue_if_low_balance": True,
    }


@retry_transient(httpx.TransportError)
def _post_payout(payload: dict) -> dict:
    with httpx.Client(timeout=settings.PAYOUT_GATEWAY_TIMEOUT_SECONDS) as client:
        response = client.post(
            f"{settings.RAZORPAY_API_URL.rstrip('/')}/payouts",
            json=payload,
            auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
            headers={"X-Payout-Idempotency": payload["reference_id"]},
        )
    if response.status_code >= 400:
        raise PayoutGatewayError(f"Gateway responded {response.status_code}: {response.text[:200]}")
    return response.json()


def transfer(payout: PayoutRequest) -> str:
    """
    Push an approved payout to the gateway. Returns the gateway payout id.
    Raises PayoutGatewayError on any failure.
    """
    if not is_configured():
        raise PayoutGatewayError("Payout gateway is not configured")

    breaker = circuit_breaker_manager.get_breaker("razorpay_payouts")
    try:
        body = breaker.call(_post_payout, _build_payload(payout))
    except CircuitBreakerError:
        raise PayoutGatewayError("Payout gateway temporarily unavailable")
    except httpx.HTTPError as e:
        raise PayoutGatewayError(f"Network error: {e}")

    reference = body.get("id")
    if not reference:
        raise PayoutGatewayError("Gateway response did not include a payout id")
    logger.info(f"Payout {payout.request_uuid} transferred: {reference}")
    return reference
