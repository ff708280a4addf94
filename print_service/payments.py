"""
payments.py — Payment Reconciler

Two-phase payment flow with the external gateway:

1. initiate(): the order's customer asks to pay a pending order. The total is
   converted to integer minor units, a gateway-side intent is created (outside
   any database transaction) and an unverified PaymentIntent row is stored.
   The client gets the intent id, amount and the gateway's public key.

2. verify(): the gateway's signed callback (relayed by the client) is checked
   server-side: HMAC-SHA256 over "<gateway_intent_id>|<payment_id>" with the
   secret only this service holds. Only a matching signature marks the intent
   verified and moves the order pending -> paid, both in one transaction.

verify() is idempotent. The gateway delivers at least once, so duplicates
(including concurrent ones) converge on a single verified intent and a single
transition; repeats report success without side effects.

A signature mismatch is never retried and is logged for manual review.
"""

import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from . import config
from .auth import SYSTEM, require_customer, require_party
from .db import Order, PaymentIntent, utcnow
from .errors import (
    AmountMismatch, Conflict, InvalidState, InvalidTransition, NotFound, SignatureMismatch,
)
from .models import OrderStatus, PaymentHandle, VerificationResult
from .state_machine import apply_transition, publish_transition

log = logging.getLogger(__name__)

MINOR_UNITS_PER_MAJOR = 100


def to_minor_units(amount):
    """Decimal major amount (149.99) to integer minor units (14999). Never via float."""
    minor = (Decimal(amount) * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def expected_signature(secret, gateway_intent_id, payment_id):
    message = f"{gateway_intent_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentReconciler:
    """
    Sole owner of the pending -> paid transition.

    Args:
        gateway: Object with `create_intent(order_id, amount_minor_units, currency)`
            and a `public_key` attribute (see clients.PaymentGatewayClient).
        secret (str): Gateway key secret used to check callback signatures.
        currency (str): ISO currency code for new intents.
        events: Optional order event publisher.
    """

    def __init__(self, gateway, secret=None, currency=None, events=None):
        self.gateway = gateway
        self.secret = secret or config.GATEWAY_KEY_SECRET
        self.currency = currency or config.PAYMENT_CURRENCY
        self.events = events

    def _handle(self, intent):
        return PaymentHandle(
            order_id=intent.order_id,
            gateway_intent_id=intent.gateway_intent_id,
            amount_minor_units=intent.amount_minor_units,
            currency=intent.currency,
            gateway_public_key=self.gateway.public_key,
        )

    def initiate(self, session, principal, order_id):
        """
        Creates (or returns the existing) gateway intent for a pending order.

        Returns:
            PaymentHandle: Client-usable checkout data, no secrets.

        Raises:
            NotFound: Unknown order.
            Forbidden: Principal is not the order's customer.
            InvalidState: Order is not pending.
            UpstreamUnavailable: Gateway failure; nothing is written.
        """
        log_prefix = f"[Order: {order_id}]"
        try:
            order = session.get(Order, order_id, populate_existing=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            require_customer(principal)
            require_party(principal, order)
            if order.status != OrderStatus.PENDING.value:
                raise InvalidState(
                    f"Order {order_id} is '{order.status}', payment needs 'pending'",
                    order_id=order_id,
                    current_status=order.status,
                )
            existing = session.scalar(
                select(PaymentIntent)
                .where(PaymentIntent.order_id == order_id)
                .execution_options(populate_existing=True)
            )
            existing_handle = self._handle(existing) if existing is not None else None
            amount_minor_units = to_minor_units(order.total_amount)
        finally:
            # No transaction stays open across the gateway round trip
            session.rollback()

        if existing_handle is not None:
            log.info(f"{log_prefix} Reusing payment intent {existing_handle.gateway_intent_id}.")
            return existing_handle

        log.info(f"{log_prefix} Creating gateway intent for {amount_minor_units} {self.currency} minor units.")
        gateway_intent_id = self.gateway.create_intent(order_id, amount_minor_units, self.currency)

        intent = PaymentIntent(
            order_id=order_id,
            gateway_intent_id=gateway_intent_id,
            amount_minor_units=amount_minor_units,
            currency=self.currency,
            verified=False,
        )
        session.add(intent)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent initiate stored its intent first; hand out that one.
            session.rollback()
            winner = session.scalar(select(PaymentIntent).where(PaymentIntent.order_id == order_id))
            handle = self._handle(winner) if winner is not None else None
            session.rollback()
            if handle is None:
                raise
            log.info(f"{log_prefix} Concurrent initiate won, reusing {handle.gateway_intent_id}.")
            return handle

        log.info(f"{log_prefix} Payment intent {gateway_intent_id} stored (unverified).")
        return self._handle(intent)

    def verify(self, session, callback):
        """
        Verifies a gateway callback and marks the order paid.

        Args:
            session: SQLAlchemy session.
            callback (PaymentCallback): gateway_intent_id, payment_id, signature.

        Returns:
            VerificationResult: `already_verified` is True for duplicate deliveries.

        Raises:
            SignatureMismatch: Signature does not match; order untouched.
            NotFound: No intent with this gateway id.
            AmountMismatch: Stored intent amount differs from the order total.
            InvalidTransition / Conflict: Order can no longer become paid (e.g. cancelled).
        """
        expected = expected_signature(self.secret, callback.gateway_intent_id, callback.payment_id)
        if not hmac.compare_digest(expected.encode(), callback.signature.encode()):
            log.critical(
                f"[Intent: {callback.gateway_intent_id}] SIGNATURE MISMATCH for payment "
                f"{callback.payment_id}. Order left unchanged. MANUAL REVIEW REQUIRED!"
            )
            raise SignatureMismatch(
                "Payment signature could not be verified",
                gateway_intent_id=callback.gateway_intent_id,
            )

        try:
            intent = session.scalar(
                select(PaymentIntent)
                .where(PaymentIntent.gateway_intent_id == callback.gateway_intent_id)
                .execution_options(populate_existing=True)
            )
            if intent is None:
                raise NotFound(
                    f"No payment intent {callback.gateway_intent_id}",
                    gateway_intent_id=callback.gateway_intent_id,
                )
            order = session.get(Order, intent.order_id, populate_existing=True)
            order_id = order.id
            log_prefix = f"[Order: {order_id}]"

            if intent.verified:
                status = OrderStatus(order.status)
                session.rollback()
                log.info(f"{log_prefix} Duplicate payment confirmation {callback.payment_id}, nothing to do.")
                return VerificationResult(order_id=order_id, status=status, already_verified=True)

            if intent.amount_minor_units != to_minor_units(order.total_amount):
                log.critical(
                    f"{log_prefix} Intent amount {intent.amount_minor_units} does not match order total "
                    f"{order.total_amount}. MANUAL REVIEW REQUIRED!"
                )
                raise AmountMismatch(
                    "Paid amount does not match the order total",
                    order_id=order_id,
                    amount_minor_units=intent.amount_minor_units,
                )

            marked = session.execute(
                update(PaymentIntent)
                .where(PaymentIntent.id == intent.id, PaymentIntent.verified.is_(False))
                .values(verified=True, gateway_payment_id=callback.payment_id, verified_at=utcnow())
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not marked:
                # Another delivery of the same confirmation committed first
                session.rollback()
                status = OrderStatus(session.scalar(select(Order.status).where(Order.id == order_id)))
                session.rollback()
                log.info(f"{log_prefix} Payment {callback.payment_id} verified concurrently, nothing to do.")
                return VerificationResult(order_id=order_id, status=status, already_verified=True)

            previous = apply_transition(session, order, OrderStatus.PAID, SYSTEM, expected=OrderStatus.PENDING)
            session.commit()
        except (InvalidTransition, Conflict) as e:
            session.rollback()
            log.critical(
                f"[Intent: {callback.gateway_intent_id}] Valid payment {callback.payment_id} could not be "
                f"applied: {e.message}. MANUAL REVIEW REQUIRED!"
            )
            raise
        except Exception:
            session.rollback()
            raise

        log.info(f"{log_prefix} Payment {callback.payment_id} verified. Order is paid.")
        publish_transition(self.events, order_id, previous, OrderStatus.PAID, SYSTEM)
        return VerificationResult(order_id=order_id, status=OrderStatus.PAID)
