import datetime
import hashlib
import json
import logging
import os
import traceback
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from google.cloud import firestore
from google.auth.transport import requests as grequests
from google.oauth2 import id_token as google_id_token

from trailhook.mailer import mailer_from_settings
from trailhook.payments import (
    ERROR,
    MalformedPayloadError,
    ORDERS,
    PAYMENTS,
    USERS,
    PaymentProcessor,
)
from trailhook.razorpay_api import api_from_settings
from trailhook.settings import APP_NAME, _env, load_settings
from trailhook.signature import verify_signature
from trailhook.whatsapp import handle_safe_return, verify_subscription

# -----------------------------------------------------------------------------
# App + logging
# -----------------------------------------------------------------------------
app = Flask(__name__)

logging.basicConfig(level=logging.INFO)
log = logging.getLogger(APP_NAME)

# -----------------------------------------------------------------------------
# Config (fail loudly at startup) + Firestore
# -----------------------------------------------------------------------------
settings = load_settings()

db = firestore.Client(project=settings.firestore_project) if settings.firestore_project else firestore.Client()

mailer = mailer_from_settings(settings)
razorpay = api_from_settings(settings)

def _processor() -> PaymentProcessor:
    return PaymentProcessor(db, settings, mailer=mailer, razorpay=razorpay)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

def _iso(v: Any) -> Optional[str]:
    if v is None:
        return None
    return v.isoformat() if hasattr(v, "isoformat") else str(v)

def _request_id() -> str:
    # Prefer upstream request id if present; else deterministic-ish.
    rid = request.headers.get("X-Cloud-Trace-Context", "") or request.headers.get("X-Request-Id", "")
    rid = rid.split("/")[0].strip()
    if rid:
        return rid
    return _sha256_hex(f"{request.path}|{datetime.datetime.utcnow().isoformat()}")[:16]

# -----------------------------------------------------------------------------
# Operator auth
# -----------------------------------------------------------------------------
def require_operator_auth(fn):
    """
    Protect operator endpoints using Google OIDC ID tokens.

    Env:
      - OPERATOR_AUDIENCE: exact audience (typically canonical Cloud Run URL)
      - ALLOWED_OPERATOR_EMAILS: comma-separated allowlist of token 'email' claims
    """
    @wraps(fn)
    def _wrapped(*args, **kwargs):
        rid = _request_id()
        aud = (_env("OPERATOR_AUDIENCE") or "").strip()
        allowed_raw = (_env("ALLOWED_OPERATOR_EMAILS") or "").strip()

        if not aud or not allowed_raw:
            log.info("operator_auth outcome=fail reason=missing_env path=%s request_id=%s", request.path, rid)
            return jsonify({"ok": False, "error": "operator_auth_not_configured"}), 403

        allowed_emails = {x.strip() for x in allowed_raw.split(",") if x.strip()}
        authz = request.headers.get("Authorization", "").strip()
        if not authz.startswith("Bearer "):
            log.info("operator_auth outcome=fail reason=missing_bearer path=%s request_id=%s", request.path, rid)
            return jsonify({"ok": False, "error": "missing_bearer"}), 401

        token = authz.split(" ", 1)[1].strip()
        try:
            claims = google_id_token.verify_oauth2_token(token, grequests.Request(), audience=aud)
        except Exception as e:
            log.info("operator_auth outcome=fail reason=token_invalid err=%s path=%s request_id=%s", str(e), request.path, rid)
            return jsonify({"ok": False, "error": "token_invalid"}), 401

        iss = str(claims.get("iss") or "")
        if iss not in ("https://accounts.google.com", "accounts.google.com"):
            log.info("operator_auth outcome=fail reason=bad_issuer iss=%s path=%s request_id=%s", iss, request.path, rid)
            return jsonify({"ok": False, "error": "bad_issuer"}), 401

        email = (claims.get("email") or "").strip()
        if not email or email not in allowed_emails:
            log.info("operator_auth outcome=fail reason=email_not_allowed email=%s path=%s request_id=%s", email, request.path, rid)
            return jsonify({"ok": False, "error": "email_not_allowed"}), 403

        log.info("operator_auth outcome=pass email=%s path=%s request_id=%s", email, request.path, rid)
        return fn(*args, **kwargs)

    return _wrapped

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@app.route("/", methods=["GET"])
def root():
    return jsonify({"ok": True, "service": APP_NAME}), 200

@app.route("/healthz", methods=["GET"])
@app.route("/healthz/", methods=["GET"])
def healthz():
    return jsonify({"ok": True}), 200

# -----------------------------------------------------------------------------
# Razorpay webhook
# -----------------------------------------------------------------------------
@app.route("/Payment", methods=["POST"])
@app.route("/razorpay-webhook", methods=["POST"])
def razorpay_webhook():
    """
    Signature and payload problems get a real 400. Once both are valid the
    response is always 200: transaction failures are logged and answered with
    status "error logged" so Razorpay does not retry-storm a handled delivery.
    """
    rid = _request_id()
    # Raw wire bytes; the signature does not survive JSON re-serialisation.
    raw = request.get_data(cache=True)
    sig = (request.headers.get("X-Razorpay-Signature") or "").strip()

    if not sig:
        log.error("razorpay_webhook_rejected reason=missing_signature request_id=%s", rid)
        return jsonify({"error": "missing_signature"}), 400

    if not verify_signature(raw, sig, settings.razorpay_webhook_secret):
        log.error("razorpay_webhook_rejected reason=invalid_signature request_id=%s", rid)
        return jsonify({"error": "invalid_signature"}), 400

    try:
        payload = json.loads(raw.decode("utf-8"))
    except Exception as e:
        log.error("razorpay_webhook_rejected reason=invalid_json err=%s request_id=%s", str(e), rid)
        return jsonify({"error": "malformed_payload", "message": "invalid_json"}), 400

    event = payload.get("event") if isinstance(payload, dict) else None
    log.info("razorpay_webhook_received event=%s request_id=%s", str(event or "none"), rid)

    try:
        result: Dict[str, Any] = _processor().process(payload)
    except MalformedPayloadError as e:
        log.error("razorpay_webhook_rejected reason=malformed_payload err=%s request_id=%s", str(e), rid)
        return jsonify({"error": "malformed_payload", "message": str(e)}), 400
    except Exception as e:
        log.error("razorpay_webhook_handler_crashed err=%s request_id=%s", str(e), rid)
        log.error(traceback.format_exc())
        return jsonify({"status": "error logged", "message": str(e)}), 200

    log.info(
        "razorpay_webhook_handled event=%s outcome=%s payment_id=%s request_id=%s",
        str(event or "none"), result.get("outcome"), str(result.get("payment_id") or "none"), rid
    )
    if result.get("outcome") == ERROR:
        return jsonify({"status": "error logged", "message": result.get("message") or ""}), 200
    return jsonify({"status": "success"}), 200

# -----------------------------------------------------------------------------
# WhatsApp Business webhook
# -----------------------------------------------------------------------------
@app.route("/webhook", methods=["GET", "POST"])
def whatsapp_webhook():
    rid = _request_id()

    if request.method == "GET":
        body, status = verify_subscription(request.args, settings.whatsapp_verify_token)
        return body, status, {"Content-Type": "text/plain"}

    payload = request.get_json(force=True, silent=True) or {}
    try:
        action = handle_safe_return(db, settings, payload)
    except Exception as e:
        log.error("whatsapp_webhook_handler_crashed err=%s request_id=%s", str(e), rid)
        log.error(traceback.format_exc())
        action = "exception"

    log.info("whatsapp_inbound request_id=%s action=%s", rid, action)
    return "", 200

# -----------------------------------------------------------------------------
# Operator endpoints (protected)
# -----------------------------------------------------------------------------
@app.route("/ops/payments/<payment_id>", methods=["GET"])
@require_operator_auth
def ops_payment_status(payment_id: str):
    try:
        snap = db.collection(PAYMENTS).document(payment_id).get()
        if not snap.exists:
            return jsonify({"ok": False, "error": "payment_not_found"}), 404
        p = snap.to_dict() or {}

        order = None
        order_id = p.get("orderId")
        if order_id:
            osnap = db.collection(ORDERS).document(str(order_id)).get()
            o = (osnap.to_dict() or {}) if osnap.exists else {}
            order = {
                "order_id": order_id,
                "exists": bool(osnap.exists),
                "payment_status": o.get("paymentStatus"),
                "payment_id": o.get("paymentId"),
            }

        user = None
        user_id = (p.get("notes") or {}).get("userId")
        if user_id:
            usnap = db.collection(USERS).document(str(user_id)).get()
            u = (usnap.to_dict() or {}) if usnap.exists else {}
            user = {
                "user_id": user_id,
                "exists": bool(usnap.exists),
                "has_access": bool(u.get("hasAccess")),
                "access_granted_at": _iso(u.get("accessGrantedAt")),
            }

    except Exception as e:
        log.error("ops_payment_status_firestore_error payment_id=%s err=%s", payment_id, str(e))
        return jsonify({"ok": False, "error": "unavailable"}), 503

    return jsonify({
        "ok": True,
        "payment": {
            "payment_id": p.get("paymentId") or payment_id,
            "order_id": order_id,
            "amount": p.get("amount"),
            "currency": p.get("currency"),
            "status": p.get("status"),
            "email": p.get("email"),
            "created_at": _iso(p.get("createdAt")),
            "webhook_event": (p.get("metadata") or {}).get("webhookEvent"),
        },
        "order": order,
        "user": user,
    }), 200

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
