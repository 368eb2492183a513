"""
Normalized view of an inbound payment notification.

Paystack webhooks, Paystack verify responses and Stripe Checkout events carry
the correlation data in different places; the parsers below map each of them
onto PaymentNotification so reconciliation has a single input shape.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, Field

PROVIDER_PAYSTACK = "paystack"
PROVIDER_STRIPE = "stripe"

PAYSTACK_CHARGE_SUCCESS = "charge.success"
PAYSTACK_VERIFY = "verify"
STRIPE_SUCCESS_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")


class PaymentNotification(BaseModel):
    """Processor-agnostic notification. `payload` is the processor object stored on the order."""

    provider: str
    event_id: str | None = None
    event_type: str | None = None
    reference: str | None = None
    # value to backfill into orders.processor_reference (defaults to reference)
    processor_reference: str | None = None
    client_id: str | None = None
    pack_id: str | None = None
    credits: int | None = None
    is_successful_charge: bool = False
    payload: dict[str, Any] = Field(default_factory=dict)
    # sha256 of the notification body; identity of bodies with neither id nor reference
    body_digest: str | None = None

    model_config = {"frozen": True}

    @property
    def dedup_key(self) -> str:
        """Processor event id, else an id derived from the reference, else from the body digest."""
        if self.event_id:
            return self.event_id
        if self.event_type == PAYSTACK_VERIFY:
            return f"verify:{self.reference}"
        if self.reference:
            return f"{self.provider}:{self.event_type or 'unknown'}:{self.reference}"
        return f"{self.provider}:{self.event_type or 'unknown'}:sha256:{self.body_digest}"


def _as_dict(value: Any) -> dict[str, Any]:
    """Paystack sends metadata as an object, a JSON string or ""."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_credits(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        credits = int(value)
    except (TypeError, ValueError):
        return None
    return credits if credits > 0 else None


def _body_digest(event: dict[str, Any], raw_body: bytes | None) -> str:
    if raw_body is None:
        raw_body = json.dumps(event, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(raw_body).hexdigest()


def _metadata_fields(meta: dict[str, Any]) -> dict[str, Any]:
    return {
        "client_id": _as_str(meta.get("clientId") or meta.get("client_id")),
        "pack_id": _as_str(meta.get("packId") or meta.get("pack_id")),
        "credits": _as_credits(meta.get("credits") or meta.get("credits_amount")),
    }


def parse_paystack_event(event: dict[str, Any], raw_body: bytes | None = None) -> PaymentNotification:
    """Webhook body `{id?, event, data: {reference, status, metadata}}`."""
    event_type = _as_str(event.get("event"))
    data = event.get("data")
    if not isinstance(data, dict):
        data = event
    meta = _as_dict(data.get("metadata"))
    reference = _as_str(data.get("reference") or meta.get("reference") or data.get("id"))
    status = data.get("status")
    is_success = event_type == PAYSTACK_CHARGE_SUCCESS or (status == "success" and reference is not None)
    return PaymentNotification(
        provider=PROVIDER_PAYSTACK,
        event_id=_as_str(event.get("id")),
        event_type=event_type,
        reference=reference,
        processor_reference=reference,
        is_successful_charge=is_success,
        payload=data,
        body_digest=_body_digest(event, raw_body),
        **_metadata_fields(meta),
    )


def parse_paystack_verification(data: dict[str, Any], requested_reference: str) -> PaymentNotification:
    """`data` object of GET /transaction/verify/{reference}."""
    meta = _as_dict(data.get("metadata"))
    reference = _as_str(data.get("reference")) or requested_reference
    is_success = data.get("status") == "success" or data.get("gateway_response") == "Approval"
    return PaymentNotification(
        provider=PROVIDER_PAYSTACK,
        event_type=PAYSTACK_VERIFY,
        reference=reference,
        processor_reference=reference,
        is_successful_charge=is_success,
        payload=data,
        **_metadata_fields(meta),
    )


def parse_stripe_event(event: dict[str, Any], raw_body: bytes | None = None) -> PaymentNotification:
    """Stripe event; only Checkout Session events carry a chargeable object."""
    event_type = _as_str(event.get("type"))
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    meta = _as_dict(obj.get("metadata"))
    session_id = _as_str(obj.get("id"))
    reference = _as_str(obj.get("client_reference_id") or meta.get("orderId") or meta.get("order_id")) or session_id
    is_success = event_type in STRIPE_SUCCESS_EVENTS and obj.get("payment_status") == "paid"
    return PaymentNotification(
        provider=PROVIDER_STRIPE,
        event_id=_as_str(event.get("id")),
        event_type=event_type,
        reference=reference,
        processor_reference=session_id or reference,
        is_successful_charge=is_success,
        payload=obj,
        body_digest=_body_digest(event, raw_body),
        **_metadata_fields(meta),
    )
