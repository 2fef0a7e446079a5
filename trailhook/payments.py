"""
Razorpay payment webhook processing.

payments/{paymentId} is a write-once ledger: the commit transaction reads it
first and does nothing when it already exists, so provider redeliveries (and
concurrent duplicate deliveries) never write twice or email twice.
"""
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from google.cloud import firestore

from trailhook.mailer import compose_invite_email

log = logging.getLogger(__name__)

PAYMENTS = "payments"
ORDERS = "orders"
USERS = "users"

EVENT_AUTHORIZED = "payment.authorized"
EVENT_CAPTURED = "payment.captured"
EVENT_FAILED = "payment.failed"
HANDLED_EVENTS = (EVENT_AUTHORIZED, EVENT_CAPTURED, EVENT_FAILED)

STATUS_CAPTURED = "captured"
ORDER_COMPLETED = "completed"

COMMITTED = "committed"
DUPLICATE = "duplicate"
NOT_TRACKED = "not_tracked"
ERROR = "error"


class MalformedPayloadError(ValueError):
    pass


def _dict_at(obj: Any, *keys: str) -> Optional[Dict[str, Any]]:
    for k in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(k)
    return obj if isinstance(obj, dict) else None

def _str_or_none(v: Any) -> Optional[str]:
    if v is None or isinstance(v, (dict, list)):
        return None
    s = str(v).strip()
    return s or None

def _doc_id_or_none(v: Any) -> Optional[str]:
    s = _str_or_none(v)
    if s and "/" in s:
        log.info("payment_ref_skipped reason=invalid_doc_id value=%s", s)
        return None
    return s


@dataclass(frozen=True)
class PaymentNotification:
    event: str
    payment_id: str
    amount: int
    currency: str = "INR"
    status: str = ""
    order_id: Optional[str] = None
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    notes: Dict[str, Any] = field(default_factory=dict)
    entity: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "PaymentNotification":
        """
        Validate the webhook body shape {event, payload: {payment: {entity: {...}}}}.
        Raises MalformedPayloadError before anything touches the database.
        """
        if not isinstance(payload, dict):
            raise MalformedPayloadError("payload_not_object")

        entity = _dict_at(payload, "payload", "payment", "entity")
        if entity is None:
            raise MalformedPayloadError("missing_payment_entity")

        payment_id = entity.get("id")
        if not isinstance(payment_id, str) or not payment_id.strip() or "/" in payment_id:
            raise MalformedPayloadError("invalid_payment_id")

        amount = entity.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise MalformedPayloadError("invalid_amount")

        # Razorpay sends an empty list for notes when none were set.
        notes = entity.get("notes")
        notes = dict(notes) if isinstance(notes, dict) else {}

        return cls(
            event=str(payload.get("event") or ""),
            payment_id=payment_id.strip(),
            amount=amount,
            currency=_str_or_none(entity.get("currency")) or "INR",
            status=_str_or_none(entity.get("status")) or "",
            order_id=_doc_id_or_none(entity.get("order_id")),
            method=_str_or_none(entity.get("method")),
            email=_str_or_none(entity.get("email")),
            contact=_str_or_none(entity.get("contact")),
            notes=notes,
            entity=entity,
        )

    @property
    def user_id(self) -> Optional[str]:
        return _doc_id_or_none(self.notes.get("userId"))

    @property
    def product_id(self) -> Optional[str]:
        return _str_or_none(self.notes.get("productId"))

    @property
    def amount_major(self) -> float:
        return self.amount / 100

    @property
    def is_captured(self) -> bool:
        return self.status == STATUS_CAPTURED


def build_payment_record(n: PaymentNotification) -> Dict[str, Any]:
    return {
        "paymentId": n.payment_id,
        "orderId": n.order_id,
        "amount": n.amount_major,
        "currency": n.currency,
        "status": n.status,
        "method": n.method,
        "email": n.email,
        "contact": n.contact,
        "notes": dict(n.notes),
        "createdAt": firestore.SERVER_TIMESTAMP,
        "metadata": {
            "rawResponse": n.entity,
            "webhookEvent": n.event,
        },
    }


class PaymentProcessor:
    def __init__(self, db, settings, mailer=None, razorpay=None):
        self.db = db
        self.settings = settings
        self.mailer = mailer
        self.razorpay = razorpay

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------
    def process(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle one verified webhook body. Only MalformedPayloadError escapes;
        transaction and side-effect failures come back as a result dict.
        """
        if not isinstance(payload, dict):
            raise MalformedPayloadError("payload_not_object")

        event = str(payload.get("event") or "")
        if event not in HANDLED_EVENTS:
            log.info("payment_event_unhandled event=%s", event or "none")
            return {"outcome": "ignored", "event": event}

        n = PaymentNotification.from_payload(payload)

        if event == EVENT_AUTHORIZED:
            return self.capture_authorized(n)

        try:
            result = self.commit(n)
        except Exception as e:
            log.error(
                "payment_commit_failed payment_id=%s event=%s err=%s",
                n.payment_id, event, str(e)
            )
            log.error(traceback.format_exc())
            return {"outcome": ERROR, "event": event, "payment_id": n.payment_id, "message": str(e)}

        result = {**result, "event": event, "payment_id": n.payment_id, "email_sent": False}
        if event == EVENT_CAPTURED and n.is_captured and result["outcome"] == COMMITTED:
            result["email_sent"] = self.send_invite_best_effort(n)
        return result

    # -------------------------------------------------------------------------
    # payment.authorized
    # -------------------------------------------------------------------------
    def capture_authorized(self, n: PaymentNotification) -> Dict[str, Any]:
        base = {"event": n.event, "payment_id": n.payment_id}
        if not self.settings.capture_authorized or self.razorpay is None:
            log.info(
                "payment_capture_skipped payment_id=%s capture_enabled=%s",
                n.payment_id, str(bool(self.settings.capture_authorized)).lower()
            )
            return {**base, "outcome": "capture_skipped"}

        try:
            self.razorpay.capture_payment(n.payment_id, n.amount, n.currency)
        except Exception as e:
            log.error("payment_capture_failed payment_id=%s amount=%s currency=%s err=%s",
                      n.payment_id, str(n.amount), n.currency, str(e))
            return {**base, "outcome": "capture_failed", "message": str(e)}

        log.info("payment_capture_requested payment_id=%s amount=%s currency=%s",
                 n.payment_id, str(n.amount), n.currency)
        return {**base, "outcome": "capture_requested"}

    # -------------------------------------------------------------------------
    # Commit transaction (payment.captured / payment.failed)
    # -------------------------------------------------------------------------
    def _is_tracked(self, n: PaymentNotification) -> bool:
        tracked = self.settings.tracked_product_ids
        if not tracked or not n.product_id:
            return True
        return n.product_id in tracked

    def commit(self, n: PaymentNotification) -> Dict[str, Any]:
        """
        One Firestore transaction, retried by the client on contention:
          1) payments/{id} exists => duplicate, no writes
          2) captured => read orders/{orderId} and users/{userId} (reads before writes)
          3) productId outside the tracked allow-list => not_tracked, no writes
          4) write payments/{id}
          5) captured => complete the order / grant the user, only if they exist
        Raises on any Firestore failure; nothing is partially applied.
        """
        payment_ref = self.db.collection(PAYMENTS).document(n.payment_id)
        order_ref = None
        user_ref = None
        if n.is_captured and n.order_id:
            order_ref = self.db.collection(ORDERS).document(n.order_id)
        if n.is_captured and n.user_id:
            user_ref = self.db.collection(USERS).document(n.user_id)

        record = build_payment_record(n)
        txn = self.db.transaction(max_attempts=self.settings.txn_max_attempts)

        @firestore.transactional
        def _txn(t):
            snap = payment_ref.get(transaction=t)
            if snap.exists:
                return {"outcome": DUPLICATE, "order_updated": False, "user_updated": False}

            order_snap = order_ref.get(transaction=t) if order_ref is not None else None
            user_snap = user_ref.get(transaction=t) if user_ref is not None else None

            if not self._is_tracked(n):
                return {"outcome": NOT_TRACKED, "order_updated": False, "user_updated": False}

            t.set(payment_ref, record)

            order_updated = False
            if order_snap is not None and order_snap.exists:
                order = order_snap.to_dict() or {}
                if order.get("paymentStatus") != ORDER_COMPLETED:
                    t.update(order_ref, {
                        "paymentStatus": ORDER_COMPLETED,
                        "paymentId": n.payment_id,
                        "updatedAt": firestore.SERVER_TIMESTAMP,
                    })
                    order_updated = True

            user_updated = False
            if user_snap is not None and user_snap.exists:
                user = user_snap.to_dict() or {}
                if user.get("hasAccess") is not True:
                    t.update(user_ref, {
                        "hasAccess": True,
                        "accessGrantedAt": firestore.SERVER_TIMESTAMP,
                    })
                    user_updated = True

            return {"outcome": COMMITTED, "order_updated": order_updated, "user_updated": user_updated}

        result = _txn(txn)

        if result["outcome"] == DUPLICATE:
            log.info("payment_idempotent_skip payment_id=%s event=%s", n.payment_id, n.event)
        elif result["outcome"] == NOT_TRACKED:
            log.info("payment_not_tracked payment_id=%s product_id=%s", n.payment_id, str(n.product_id))
        else:
            log.info(
                "payment_committed payment_id=%s status=%s order_id=%s order_updated=%s user_id=%s user_updated=%s",
                n.payment_id, n.status, str(n.order_id or "none"), str(result["order_updated"]).lower(),
                str(n.user_id or "none"), str(result["user_updated"]).lower()
            )
        return result

    # -------------------------------------------------------------------------
    # Post-commit invite (best-effort)
    # -------------------------------------------------------------------------
    def send_invite_best_effort(self, n: PaymentNotification) -> bool:
        if not n.email:
            log.info("invite_email_skipped payment_id=%s reason=no_email", n.payment_id)
            return False
        if self.mailer is None:
            log.info("invite_email_skipped payment_id=%s reason=no_mailer", n.payment_id)
            return False

        subject, body = compose_invite_email(
            n.amount_major, n.currency, n.payment_id,
            self.settings.invite_site_url, self.settings.support_email,
        )
        try:
            self.mailer.send_mail(n.email, subject, body)
        except Exception as e:
            log.error("invite_email_failed payment_id=%s to=%s err=%s", n.payment_id, n.email, str(e))
            return False
        return True
