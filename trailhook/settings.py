import os
from dataclasses import dataclass
from typing import FrozenSet, List, Optional

APP_NAME = "trailhook-webhook"

DEFAULT_SAFE_RETURN_TEMPLATE = "safe_return_confirmation_beta2"

# -----------------------------------------------------------------------------
# Env helpers
# -----------------------------------------------------------------------------
def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name, default)
    if v is None:
        return None
    v = v.strip() if isinstance(v, str) else v
    return v or default

def _bool_env(name: str, default: bool = False) -> bool:
    v = _env(name)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "t", "yes", "y", "on")

def _int_env(name: str, default: int) -> int:
    v = _env(name)
    if v is None:
        return default
    try:
        n = int(str(v).strip())
    except Exception:
        raise ValueError(f"invalid_int_env:{name}={v}")
    if n <= 0:
        raise ValueError(f"invalid_int_env:{name}={v}")
    return n

def _list_env(name: str) -> List[str]:
    """
    Comma-separated tokens, blanks dropped, first-seen order preserved.
    """
    raw = _env(name) or ""
    out: List[str] = []
    for tok in (p.strip() for p in raw.split(",")):
        if tok and tok not in out:
            out.append(tok)
    return out


@dataclass(frozen=True)
class Settings:
    razorpay_webhook_secret: str
    email_user: str
    email_password: str
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    capture_authorized: bool = False
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    tracked_product_ids: FrozenSet[str] = frozenset()
    txn_max_attempts: int = 5
    firestore_project: Optional[str] = None
    invite_site_url: str = "https://manav.in"
    support_email: str = "support@manav.in"
    whatsapp_verify_token: Optional[str] = None
    whatsapp_graph_api_url: Optional[str] = None
    whatsapp_graph_api_token: Optional[str] = None
    whatsapp_safe_return_template: str = DEFAULT_SAFE_RETURN_TEMPLATE


def load_settings() -> Settings:
    """
    Build Settings from the environment. Fails loudly at startup:

      - RAZORPAY_WEBHOOK_SECRET, EMAIL_USER, EMAIL_PASSWORD are always required
      - RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET are required once
        RAZORPAY_CAPTURE_AUTHORIZED is on
      - integer vars must parse to a positive int
    """
    capture_authorized = _bool_env("RAZORPAY_CAPTURE_AUTHORIZED", False)

    required = ["RAZORPAY_WEBHOOK_SECRET", "EMAIL_USER", "EMAIL_PASSWORD"]
    if capture_authorized:
        required += ["RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET"]
    missing = [name for name in required if not _env(name)]
    if missing:
        raise ValueError(f"missing_env:{','.join(missing)}")

    return Settings(
        razorpay_webhook_secret=_env("RAZORPAY_WEBHOOK_SECRET"),
        email_user=_env("EMAIL_USER"),
        email_password=_env("EMAIL_PASSWORD"),
        smtp_host=_env("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=_int_env("SMTP_PORT", 587),
        capture_authorized=capture_authorized,
        razorpay_key_id=_env("RAZORPAY_KEY_ID"),
        razorpay_key_secret=_env("RAZORPAY_KEY_SECRET"),
        tracked_product_ids=frozenset(_list_env("TRACKED_PRODUCT_IDS")),
        txn_max_attempts=_int_env("FIRESTORE_TXN_MAX_ATTEMPTS", 5),
        firestore_project=_env("GOOGLE_CLOUD_PROJECT"),
        invite_site_url=_env("INVITE_SITE_URL", "https://manav.in"),
        support_email=_env("SUPPORT_EMAIL", "support@manav.in"),
        whatsapp_verify_token=_env("WHATSAPP_VERIFY_TOKEN"),
        whatsapp_graph_api_url=_env("WHATSAPP_GRAPH_API_URL"),
        whatsapp_graph_api_token=_env("WHATSAPP_GRAPH_API_TOKEN"),
        whatsapp_safe_return_template=_env("WHATSAPP_SAFE_RETURN_TEMPLATE", DEFAULT_SAFE_RETURN_TEMPLATE),
    )
