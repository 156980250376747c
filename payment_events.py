"""
inbound stripe events: signature check + typed parsing.

no business logic lives here. the receiver only turns a raw webhook body into a
PaymentEvent; app.py decides what to do with each kind.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cashback_engine import from_minor_units
from errors import InvalidEventError, VerificationError

SUCCEEDED = "succeeded"
FAILED = "failed"
ACCOUNT_UPDATED = "account_updated"
OTHER = "other"

# every channel a completed purchase can show up on. they all resolve to the
# payment intent id, so whichever arrives first settles and the rest are no-ops.
SUCCEEDED_TYPES = {
    "payment_intent.succeeded": "amount",
    "checkout.session.completed": "amount_total",
    "charge.succeeded": "amount",
}
FAILED_TYPES = {"payment_intent.payment_failed"}
ACCOUNT_TYPES = {"account.updated"}


# ---------
# pydantic models (wire shapes)
# ---------

class PaymentMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    business_id: Optional[str] = Field(None, alias="businessId")
    user_id: Optional[str] = Field(None, alias="userId")
    save_payment_method: bool = Field(False, alias="savePaymentMethod")


class AccountStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


class _EventData(BaseModel):
    object: Dict[str, Any]


class _EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str
    data: _EventData


@dataclass(frozen=True)
class PaymentEvent:
    event_id: Optional[str]
    type: str
    kind: str
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    metadata: PaymentMetadata = field(default_factory=PaymentMetadata)
    account: Optional[AccountStatus] = None


# ---------
# verification + parsing
# ---------

def verify_signature(payload: bytes, signature: Optional[str], secret: str, tolerance: int = 300) -> str:
    """
    check the Stripe-Signature header (t=...,v1=...) against the endpoint secret.
    returns the decoded body.
    """
    if not signature:
        raise VerificationError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise VerificationError("Body is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance or None)
    except stripe.SignatureVerificationError as exc:
        raise VerificationError(f"Invalid Stripe signature: {exc}") from exc

    return body


def parse_event(raw: Any) -> PaymentEvent:
    try:
        envelope = _EventEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise VerificationError(f"Malformed event: {exc.error_count()} invalid field(s)") from exc

    obj = envelope.data.object
    event_type = envelope.type

    if event_type == "checkout.session.completed" and obj.get("payment_status") != "paid":
        # delayed payment methods complete the session before the money moves
        return PaymentEvent(event_id=envelope.id, type=event_type, kind=OTHER)

    if event_type in SUCCEEDED_TYPES:
        # checkout sessions and charges carry the payment intent they belong to
        payment_id = obj.get("payment_intent") or obj.get("id")
        amount_key = SUCCEEDED_TYPES[event_type]
        if amount_key not in obj:
            raise InvalidEventError(f"{event_type} event is missing '{amount_key}'")
        return PaymentEvent(
            event_id=envelope.id,
            type=event_type,
            kind=SUCCEEDED,
            payment_id=payment_id,
            amount=from_minor_units(obj[amount_key]),
            metadata=_parse_metadata(obj),
        )

    if event_type in FAILED_TYPES:
        return PaymentEvent(
            event_id=envelope.id,
            type=event_type,
            kind=FAILED,
            payment_id=obj.get("id"),
            metadata=_parse_metadata(obj),
        )

    if event_type in ACCOUNT_TYPES:
        try:
            account = AccountStatus.model_validate(obj)
        except ValidationError as exc:
            raise InvalidEventError("account.updated event has no account id") from exc
        return PaymentEvent(
            event_id=envelope.id,
            type=event_type,
            kind=ACCOUNT_UPDATED,
            account=account,
        )

    return PaymentEvent(event_id=envelope.id, type=event_type, kind=OTHER)


def _parse_metadata(obj: Dict[str, Any]) -> PaymentMetadata:
    try:
        return PaymentMetadata.model_validate(obj.get("metadata") or {})
    except ValidationError as exc:
        raise InvalidEventError(f"Invalid payment metadata: {exc.error_count()} invalid field(s)") from exc


def verify_and_parse(payload: bytes, signature: Optional[str], secret: str, tolerance: int = 300) -> PaymentEvent:
    body = verify_signature(payload, signature, secret, tolerance)
    try:
        raw = json.loads(body)
    except json.JSONDecodeError as exc:
        raise VerificationError("Invalid JSON payload") from exc
    return parse_event(raw)


def require_metadata(event: PaymentEvent) -> Tuple[str, str]:
    """
    a succeeded payment without businessId/userId means checkout was created
    without our metadata. reject it so it shows up instead of silently losing money.
    """
    missing = []
    if not event.metadata.business_id:
        missing.append("businessId")
    if not event.metadata.user_id:
        missing.append("userId")
    if not event.payment_id:
        missing.append("payment id")
    if missing:
        raise InvalidEventError(f"{event.type} event is missing {', '.join(missing)}")
    return event.metadata.business_id, event.metadata.user_id
