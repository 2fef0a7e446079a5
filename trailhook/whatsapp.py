import datetime
import logging
from typing import Any, Dict, Optional, Tuple

import requests

log = logging.getLogger(__name__)

SAFE_RETURN_REPLY = "Yes, I'm Back & Safe"

WHATSAPP_LOG = "WhatsAppLog"
ALERT_TABLE = "AlertTable"
USER_TABLE = "UserTable"


def verify_subscription(args: Dict[str, Any], verify_token: Optional[str]) -> Tuple[str, int]:
    """Meta hub handshake: echo hub.challenge only for a matching verify token."""
    mode = (args.get("hub.mode") or "").strip()
    token = (args.get("hub.verify_token") or "").strip()
    challenge = args.get("hub.challenge") or ""

    if verify_token and mode == "subscribe" and token == verify_token:
        log.info("whatsapp_subscribe outcome=pass")
        return challenge, 200
    log.info("whatsapp_subscribe outcome=fail mode=%s configured=%s", mode or "none", str(bool(verify_token)).lower())
    return "", 403


def extract_safe_return_reply(body: Any) -> Optional[Dict[str, str]]:
    """
    First message of the first change, when it is the "back & safe" button.
    Returns {"from": <wa id>, "context_id": <id of the alert message>} or None.
    """
    try:
        msg = body["entry"][0]["changes"][0]["value"]["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(msg, dict):
        return None

    button = msg.get("button") or {}
    if not isinstance(button, dict) or button.get("payload") != SAFE_RETURN_REPLY:
        return None

    context = msg.get("context") or {}
    context_id = (context.get("id") if isinstance(context, dict) else None) or msg.get("id")
    from_wa = msg.get("from")
    if not context_id or not from_wa:
        return None
    return {"from": str(from_wa), "context_id": str(context_id)}


def _doc_or_none(db, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    if not doc_id:
        return None
    snap = db.collection(collection).document(str(doc_id)).get()
    if not snap.exists:
        return None
    return snap.to_dict() or {}


def send_safe_return_confirmation(settings, to: str, full_name: str, trip: str) -> bool:
    url = settings.whatsapp_graph_api_url
    token = settings.whatsapp_graph_api_token
    if not (url and token):
        log.info("whatsapp_send_skipped to=%s reason=missing_env", to)
        return False

    try:
        resp = requests.post(
            url,
            json={
                "messaging_product": "whatsapp",
                "to": to,
                "type": "template",
                "template": {
                    "name": settings.whatsapp_safe_return_template,
                    "language": {"code": "en"},
                    "components": [{
                        "type": "body",
                        "parameters": [
                            {"type": "text", "text": full_name},
                            {"type": "text", "text": trip},
                        ],
                    }],
                },
            },
            headers={"Authorization": f"Bearer {token}"},
            timeout=10,
        )
        log.info(
            "whatsapp_send_result to=%s status=%s body=%s",
            to, str(getattr(resp, "status_code", "na")), (resp.text[:200] if hasattr(resp, "text") else "na")
        )
        return getattr(resp, "status_code", 500) < 400
    except Exception as e:
        log.error("whatsapp_send_failed to=%s err=%s", to, str(e))
        return False


def handle_safe_return(db, settings, body: Any) -> str:
    """
    Close the trip alert a "back & safe" reply refers to, then confirm on WhatsApp.
    Returns the action taken (for the request log line).
    """
    reply = extract_safe_return_reply(body)
    if reply is None:
        return "ignored"

    log_doc = _doc_or_none(db, WHATSAPP_LOG, reply["context_id"])
    if log_doc is None:
        return "log_not_found"

    alert_id = log_doc.get("alertTableId")
    alert = _doc_or_none(db, ALERT_TABLE, alert_id)
    if alert is None:
        return "alert_not_found"

    user = _doc_or_none(db, USER_TABLE, alert.get("UserId")) or {}

    db.collection(ALERT_TABLE).document(str(alert_id)).update({
        "BackAndSafeTime": datetime.datetime.now(datetime.timezone.utc),
        "IsTripCompleted": True,
    })

    sent = send_safe_return_confirmation(
        settings,
        reply["from"],
        str(user.get("FullName") or "there"),
        str(alert.get("TripName") or "your trip"),
    )
    return "trip_completed" if sent else "trip_completed_unconfirmed"
