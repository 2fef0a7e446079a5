"""Usage:
python tools/reconcile_payment.py --payment-id pay_XXXXXXXXXXXXXX
python tools/reconcile_payment.py --payment-id pay_XXXXXXXXXXXXXX --send-invite

Re-runs the payment commit transaction from Razorpay's own copy of a payment,
for deliveries the webhook answered with status "error logged". Safe to repeat:
an already-recorded payment reports "duplicate" and writes nothing.
"""

import argparse
import sys
from typing import Any, Dict

from google.cloud import firestore

from trailhook.mailer import mailer_from_settings
from trailhook.payments import (
    COMMITTED,
    DUPLICATE,
    NOT_TRACKED,
    PaymentNotification,
    PaymentProcessor,
)
from trailhook.razorpay_api import api_from_settings
from trailhook.settings import load_settings

FINAL_STATUSES = ("captured", "failed")
OK_OUTCOMES = (COMMITTED, DUPLICATE, NOT_TRACKED)


def _payload_for(entity: Dict[str, Any]) -> Dict[str, Any]:
    status = str(entity.get("status") or "")
    return {"event": f"payment.{status}", "payload": {"payment": {"entity": entity}}}


def reconcile(processor: PaymentProcessor, api, payment_id: str, send_invite: bool = False) -> Dict[str, Any]:
    entity = api.fetch_payment(payment_id)
    n = PaymentNotification.from_payload(_payload_for(entity))
    if n.status not in FINAL_STATUSES:
        return {"outcome": "not_final", "status": n.status}

    result = processor.commit(n)
    result = {**result, "status": n.status, "email_sent": False}
    if send_invite and n.is_captured and result["outcome"] == COMMITTED:
        result["email_sent"] = processor.send_invite_best_effort(n)
    return result


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay a Razorpay payment into the payments ledger.")
    parser.add_argument("--payment-id", required=True, help="Razorpay payment id (pay_...)")
    parser.add_argument("--send-invite", action="store_true", help="Email the invite if the payment is newly committed")
    args = parser.parse_args()

    settings = load_settings()
    api = api_from_settings(settings)
    if api is None:
        print("error: RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET are required", file=sys.stderr)
        return 2

    db = firestore.Client(project=settings.firestore_project) if settings.firestore_project else firestore.Client()
    processor = PaymentProcessor(db, settings, mailer=mailer_from_settings(settings), razorpay=api)

    try:
        result = reconcile(processor, api, args.payment_id.strip(), send_invite=args.send_invite)
    except Exception as exc:
        print(f"reconcile failed ({exc})", file=sys.stderr)
        return 1

    print("payment_id:", args.payment_id.strip())
    for key in ("outcome", "status", "order_updated", "user_updated", "email_sent"):
        if key in result:
            print(f"{key}:", result[key])
    return 0 if result["outcome"] in OK_OUTCOMES else 1


if __name__ == "__main__":
    raise SystemExit(main())
