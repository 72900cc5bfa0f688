"""
gateway_events.py
Decoding of pushed payment-gateway lifecycle events and dispatch into the
settlement engine.

An event that cannot be tied to a membership or payment is logged and
acknowledged as a no-op; it never blocks the rest of a batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import invoices
import settlement
import store
import utils
from errors import DeliveryError, DuesError, NotFoundError, PersistenceError, ValidationError
from logging_config import run_context
from models import Membership, Payment, SettlementOutcome, SettlementResult
from notifications import PAYMENT_FAILED, Notifier, get_default_notifier

logger = logging.getLogger("dues.gateway_events")

EVENT_OUTCOMES = {
    "payment_intent.succeeded": SettlementOutcome.SUCCEEDED,
    "invoice.paid": SettlementOutcome.SUCCEEDED,
    "invoice.payment_succeeded": SettlementOutcome.SUCCEEDED,
    "payment_intent.payment_failed": SettlementOutcome.FAILED,
    "invoice.payment_failed": SettlementOutcome.FAILED,
}


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    outcome: SettlementOutcome
    reference: str | None = None
    amount: float | None = None
    occurred_at: datetime | None = None
    metadata: dict = field(default_factory=dict)
    failure_reason: str | None = None

    @property
    def payment_id(self) -> int | None:
        return _int_or_none(self.metadata.get("payment_id"))

    @property
    def membership_id(self) -> int | None:
        return _int_or_none(self.metadata.get("membership_id"))


def _int_or_none(value) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Expected an integer id, got {value!r}") from e


def _timestamp(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Unreadable event timestamp: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def decode_gateway_event(payload: dict) -> GatewayEvent:
    """
    Build a GatewayEvent from a raw payload:

        {"id": "evt_1", "type": "payment_intent.succeeded", "reference": "pi_1",
         "amount_cents": 4000, "created": 1735689600,
         "metadata": {"payment_id": "12", "membership_id": "3"}}

    `outcome` ("succeeded"/"failed") may stand in for `type`; `amount` is dollars,
    `amount_cents` is cents. Raises ValidationError on anything else.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Gateway event payload must be an object")
    event_id = payload.get("id")
    if not event_id:
        raise ValidationError("Gateway event has no id")

    if payload.get("outcome"):
        try:
            outcome = SettlementOutcome(payload["outcome"])
        except ValueError as e:
            raise ValidationError(f"Unknown outcome: {payload['outcome']!r}") from e
    elif payload.get("type") in EVENT_OUTCOMES:
        outcome = EVENT_OUTCOMES[payload["type"]]
    else:
        raise ValidationError(f"Unsupported gateway event type: {payload.get('type')!r}")

    amount = None
    try:
        if payload.get("amount_cents") is not None:
            amount = round(int(payload["amount_cents"]) / 100, 2)
        elif payload.get("amount") is not None:
            amount = round(float(payload["amount"]), 2)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Unreadable event amount in {event_id}") from e

    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("Gateway event metadata must be an object")
    _int_or_none(metadata.get("payment_id"))
    _int_or_none(metadata.get("membership_id"))

    return GatewayEvent(
        event_id=str(event_id),
        outcome=outcome,
        reference=payload.get("reference"),
        amount=amount,
        occurred_at=_timestamp(payload.get("created")),
        metadata=dict(metadata),
        failure_reason=payload.get("failure_reason"),
    )


def _new_dues_payment(membership: Membership, event: GatewayEvent) -> Payment:
    """Pending dues invoice for a gateway charge the billing run never generated."""
    organization = store.get_organization(membership.organization_id)
    today = utils.today_in_timezone(organization.timezone, event.occurred_at)
    billing_date = membership.next_payment_due or today
    payment_id, created = invoices.find_or_create_dues_invoice(
        organization, membership, billing_date, amount=event.amount, settlement_key=event.event_id
    )
    if created:
        logger.info(
            "gateway_payment_created",
            extra={"payment_id": payment_id, "membership_id": membership.id, "event_id": event.event_id},
        )
    return store.get_payment(payment_id)


def resolve_payment(event: GatewayEvent) -> Payment | None:
    """
    Payment an event settles, by metadata payment id, then gateway reference,
    then the newest open unlinked payment on the metadata membership. A success
    with none of those on a known membership gets a new dues payment.
    """
    if event.payment_id is not None:
        payment = store.find_payment(event.payment_id)
        if payment:
            return payment
    if event.reference:
        payment = store.find_payment_by_reference(event.reference)
        if payment:
            return payment
    if event.membership_id is None:
        return None

    membership = store.find_membership(event.membership_id)
    if membership is None:
        return None
    payment = store.find_open_payment_for_membership(membership.id)
    if payment:
        return payment
    if event.outcome == SettlementOutcome.SUCCEEDED:
        return _new_dues_payment(membership, event)
    return None


def _notify_failure(notifier: Notifier, payment: Payment, event: GatewayEvent) -> None:
    membership = store.get_membership(payment.membership_id)
    variables = {
        "memberName": membership.member_name,
        "amount": f"{payment.amount:.2f}",
        "invoiceNumber": payment.invoice_number,
        "failureReason": event.failure_reason,
    }
    try:
        notifier.send(PAYMENT_FAILED, membership.member_email, variables)
    except DeliveryError:
        logger.error("payment_failed_notice_not_sent", exc_info=True, extra={"payment_id": payment.id})
    except Exception:
        # the failure is already settled; a broken delegate only loses the notice
        logger.exception("payment_failed_notice_not_sent", extra={"payment_id": payment.id})


def handle_gateway_event(event: GatewayEvent, notifier: Notifier | None = None) -> SettlementResult | None:
    """Settle one decoded event. Returns None when the event was acknowledged as a no-op."""
    with run_context(event.event_id):
        # a redelivered event must not resolve (and possibly invoice) again
        prior = store.get_settlement(event.event_id)
        if prior is not None:
            logger.info("gateway_event_replayed", extra={"event_id": event.event_id, "payment_id": prior.payment_id})
            return prior

        payment = resolve_payment(event)
        if payment is None:
            logger.warning(
                "gateway_event_unmatched",
                extra={"event_id": event.event_id, "reference": event.reference, "event_metadata": event.metadata},
            )
            return None
        try:
            result = settlement.settle_payment(
                payment.id,
                event.event_id,
                event.outcome,
                amount_paid=event.amount,
                occurred_at=event.occurred_at,
                gateway_reference=event.reference,
                notes=event.failure_reason,
            )
        except NotFoundError:
            logger.warning("gateway_event_target_missing", extra={"event_id": event.event_id, "payment_id": payment.id})
            return None

        if result.outcome == SettlementOutcome.FAILED and not result.duplicate:
            _notify_failure(notifier or get_default_notifier(), payment, event)
        return result


def process_gateway_events(payloads: list[dict], notifier: Notifier | None = None) -> list[SettlementResult | None]:
    """
    Handle a batch in order. A bad payload or a rejected settlement is logged and
    yields None; store failures propagate so the batch can be redelivered.
    """
    results: list[SettlementResult | None] = []
    for payload in payloads:
        try:
            event = decode_gateway_event(payload)
            results.append(handle_gateway_event(event, notifier))
        except PersistenceError:
            raise
        except DuesError:
            event_id = payload.get("id") if isinstance(payload, dict) else None
            logger.exception("gateway_event_rejected", extra={"event_id": event_id})
            results.append(None)
    return results
