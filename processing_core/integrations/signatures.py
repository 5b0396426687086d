"""
Webhook signature verification and event identity extraction.

Each provider signs its deliveries differently:
- Stripe: Stripe-Signature header, checked by stripe.Webhook.construct_event
- Paystack: x-paystack-signature, HMAC-SHA512 of the raw body with the secret key
- Flutterwave: verif-hash, a shared secret echoed on every delivery

Verification happens before the event ledger sees the event. An event whose
identity cannot be derived is rejected instead of being given a synthetic id,
which would defeat deduplication.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

import stripe
import structlog

from processing_core.config import Settings
from processing_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookVerificationError(Exception):
    """Raised when a webhook fails authentication or cannot be parsed."""

    pass


class UnknownProviderError(WebhookVerificationError):
    """Raised for a provider with no verifier."""

    pass


@dataclass(frozen=True)
class WebhookEvent:
    """A verified provider event ready to be claimed."""

    provider: str
    event_id: str
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    signature_verified: bool = True


def _parse_json(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookVerificationError(f"Webhook body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise WebhookVerificationError("Webhook body must be a JSON object")
    return payload


def _event_data(payload: Dict[str, Any], provider: str) -> Dict[str, Any]:
    data = payload.get("data")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise WebhookVerificationError(f"{provider} event data must be a JSON object")
    return data


def _normalize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def verify_stripe(body: bytes, headers: Mapping[str, str], settings: Settings) -> WebhookEvent:
    """
    Verify a Stripe delivery.

    Args:
        body: Raw request body
        headers: Request headers
        settings: Application settings (webhook secret, tolerance)

    Returns:
        WebhookEvent: Verified event keyed by the Stripe event id

    Raises:
        WebhookVerificationError: If the signature is missing or invalid
    """
    secret = settings.stripe_webhook_secret
    if not secret:
        raise WebhookVerificationError("Stripe webhook secret is not configured")

    signature = _normalize_headers(headers).get("stripe-signature")
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload=body,
            sig_header=signature,
            secret=secret,
            tolerance=settings.stripe_signature_tolerance,
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookVerificationError(f"Invalid Stripe signature: {e}") from e
    except ValueError as e:
        raise WebhookVerificationError(f"Invalid Stripe payload: {e}") from e

    payload = _parse_json(body)
    event_id = payload.get("id") or getattr(event, "id", None)
    if not event_id:
        raise WebhookVerificationError("Stripe event has no id")

    return WebhookEvent(
        provider="stripe",
        event_id=str(event_id),
        event_type=str(payload.get("type") or "unknown"),
        payload=payload,
    )


def verify_paystack(body: bytes, headers: Mapping[str, str], settings: Settings) -> WebhookEvent:
    """Verify a Paystack delivery (HMAC-SHA512 over the raw body)."""
    secret = settings.paystack_secret_key
    if not secret:
        raise WebhookVerificationError("Paystack secret key is not configured")

    signature = _normalize_headers(headers).get("x-paystack-signature")
    if not signature:
        raise WebhookVerificationError("Missing x-paystack-signature header")

    expected = hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("Invalid Paystack signature")

    payload = _parse_json(body)
    data = _event_data(payload, "Paystack")
    identity = data.get("id") or data.get("reference")
    if not identity:
        raise WebhookVerificationError("Paystack event has no data.id or data.reference")

    return WebhookEvent(
        provider="paystack",
        event_id=str(identity),
        event_type=str(payload.get("event") or "unknown"),
        payload=payload,
    )


def verify_flutterwave(
    body: bytes, headers: Mapping[str, str], settings: Settings
) -> WebhookEvent:
    """Verify a Flutterwave delivery (shared verif-hash secret)."""
    secret = settings.flutterwave_webhook_hash
    if not secret:
        raise WebhookVerificationError("Flutterwave webhook hash is not configured")

    signature = _normalize_headers(headers).get("verif-hash")
    if not signature or not hmac.compare_digest(signature, secret):
        raise WebhookVerificationError("Invalid Flutterwave verif-hash")

    payload = _parse_json(body)
    event_type = str(payload.get("event") or payload.get("event.type") or "unknown")
    data = _event_data(payload, "Flutterwave")
    reference = data.get("id") or data.get("tx_ref")
    if not reference:
        raise WebhookVerificationError("Flutterwave event has no data.id or data.tx_ref")

    return WebhookEvent(
        provider="flutterwave",
        event_id=f"{event_type}:{reference}",
        event_type=event_type,
        payload=payload,
    )


Verifier = Callable[[bytes, Mapping[str, str], Settings], WebhookEvent]

VERIFIERS: Dict[str, Verifier] = {
    "stripe": verify_stripe,
    "paystack": verify_paystack,
    "flutterwave": verify_flutterwave,
}


def verify_webhook(
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
    settings: Settings,
) -> WebhookEvent:
    """
    Verify a delivery from any supported provider.

    Args:
        provider: Provider name from the route
        body: Raw request body
        headers: Request headers
        settings: Application settings

    Returns:
        WebhookEvent: Verified event

    Raises:
        UnknownProviderError: If the provider is not supported
        WebhookVerificationError: If verification fails
    """
    verifier: Optional[Verifier] = VERIFIERS.get(provider.lower())
    if verifier is None:
        raise UnknownProviderError(f"Unsupported webhook provider: {provider}")

    try:
        event = verifier(body, headers, settings)
    except WebhookVerificationError as e:
        logger.warning("webhook_signature_verification_failed", provider=provider, error=str(e))
        metrics.record_signature_failure(provider.lower())
        raise

    logger.info(
        "webhook_signature_verified",
        provider=event.provider,
        event_id=event.event_id,
        event_type=event.event_type,
    )
    return event
