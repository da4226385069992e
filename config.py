# config.py
from __future__ import annotations
import os, re
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv, find_dotenv

# Load .env once, globally
load_dotenv(find_dotenv() or (Path(__file__).parent / ".env"))

def _clean(val: Optional[str], default: Optional[str] = None) -> Optional[str]:
    if val is None:
        return default
    v = val.strip()
    if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
        v = v[1:-1].strip()
    return v or default

def _maybe_int(name: str, default: Optional[int] = None) -> Optional[int]:
    v = _clean(os.getenv(name))
    try:
        return int(v) if v is not None else default
    except ValueError:
        return default

def _maybe_bool(name: str, default: bool = False) -> bool:
    v = _clean(os.getenv(name))
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}

# ----- Logging -----
LOG_LEVEL = (_clean(os.getenv("LOG_LEVEL"), "INFO") or "INFO").upper()
LOG_FILE  = _clean(os.getenv("LOG_FILE"))  # optional rotating file

# ----- Database -----
# DATABASE_URL wins; otherwise DB_* builds a Postgres URL; otherwise local SQLite.
DB_HOST = _clean(os.getenv("DB_HOST"))
DB_PORT = _maybe_int("DB_PORT", 5432) or 5432
DB_NAME = _clean(os.getenv("DB_NAME"))
DB_USER = _clean(os.getenv("DB_USER"))
DB_PASSWORD = _clean(os.getenv("DB_PASSWORD"))

if _clean(os.getenv("DATABASE_URL")):
    SQLALCHEMY_URL = _clean(os.getenv("DATABASE_URL"))
elif DB_HOST:
    SQLALCHEMY_URL = f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
else:
    SQLALCHEMY_URL = "sqlite:///./tickets.db"

# ----- API -----
# Clients send X-API-Key: <key> or Authorization: Bearer <key>. Unset disables the check.
API_KEY = _clean(os.getenv("API_KEY"))

ALLOWED_ORIGINS = [
    o.strip() for o in (_clean(os.getenv("ALLOWED_ORIGINS"), "http://localhost:3000") or "").split(",") if o.strip()
]

# ----- Tokens / QR -----
TOKEN_BYTES = _maybe_int("TOKEN_BYTES", 24) or 24

# If set, the QR encodes <base>?token=<token> instead of the bare token.
TICKET_QR_URL_BASE = _clean(os.getenv("TICKET_QR_URL_BASE"))

# QR image rendering options
from qrcode.constants import ERROR_CORRECT_M
QR_IMAGE_OPTS = {
    "version": None,                 # let qrcode fit automatically
    "error_correction": ERROR_CORRECT_M,
    "box_size": 10,
    "border": 1,
}

# Directory that template image paths are resolved against
TEMPLATE_ROOT = Path(_clean(os.getenv("TEMPLATE_ROOT"), str(Path(__file__).parent / "public")))

# Plain ticket card (no template image configured)
PLAIN_TICKET_SIZE = (600, 800)
PLAIN_TICKET_QR_BOX = {"x": 100, "y": 120, "width": 400, "height": 400}

# Template image without configured positions
TEMPLATE_DEFAULT_QR_BOX = {"x": 50, "y": 50, "width": 200, "height": 200}
TEMPLATE_DEFAULT_NAME_POS = {"x": 50, "y": 300, "font_size": 24, "color": "#000000"}

# ----- S3 ticket archive (optional) -----
AWS_ACCESS_KEY_ID     = _clean(os.getenv("AWS_ACCESS_KEY_ID"))
AWS_SECRET_ACCESS_KEY = _clean(os.getenv("AWS_SECRET_ACCESS_KEY"))
AWS_DEFAULT_REGION    = _clean(os.getenv("AWS_DEFAULT_REGION"), "us-east-1")

S3_BUCKET = _clean(os.getenv("S3_BUCKET"))  # None → tickets are not archived
S3_PREFIX = _clean(os.getenv("S3_PREFIX"), "tickets/")

# ExtraArgs passed to S3 upload (headers, etc.)
S3_TICKET_EXTRA_ARGS = {
    "ContentType": "image/png",
    "ContentDisposition": "inline",
    "CacheControl": "no-store, no-cache, must-revalidate, max-age=0",
}

# If True, return a presigned GET URL after upload; else return the public HTTPS URL.
S3_USE_PRESIGNED = _maybe_bool("S3_USE_PRESIGNED", True)
S3_PRESIGN_EXPIRES = _maybe_int("S3_PRESIGN_EXPIRES", 900)  # seconds

# ── SMTP / Email config ───────────────────────────────────────
SMTP_HOST = _clean(os.getenv("SMTP_HOST"), "smtp.gmail.com")
SMTP_PORT = _maybe_int("SMTP_PORT", 587)
SMTP_SECURITY = _clean(os.getenv("SMTP_SECURITY"), "ssl" if SMTP_PORT == 465 else "starttls")  # "ssl" | "starttls" | "none"

SMTP_USERNAME = _clean(os.getenv("SMTP_USER"))
SMTP_PASSWORD = _clean(os.getenv("SMTP_PASS"))

SENDER_EMAIL  = _clean(os.getenv("SMTP_FROM"), SMTP_USERNAME)
SENDER_NAME   = _clean(os.getenv("SENDER_NAME"), "Event Team")
DEFAULT_BCC   = _clean(os.getenv("DEFAULT_BCC"))
REPLY_TO      = _clean(os.getenv("REPLY_TO"))  # optional
EMAIL_SUBJECT_PREFIX = _clean(os.getenv("EMAIL_SUBJECT_PREFIX"))
EMAIL_DRY_RUN = _maybe_bool("EMAIL_DRY_RUN", False)       # True → log instead of sending
EMAIL_ALLOWLIST_REGEX = _clean(os.getenv("EMAIL_ALLOWLIST_REGEX"))  # e.g. r"@example\.com$"

DEFAULT_EMAIL_SUBJECT = "Your Ticket for {{eventTitle}}"
DEFAULT_EMAIL_BODY = (
    "Hi {{name}},\n\n"
    "Here is your ticket for {{eventTitle}}.\n\n"
    "Please present the QR code at the event for entry."
)

# ----- Delivery pipeline -----
DELIVERY_DEFAULT_BATCH = 5
DELIVERY_MIN_BATCH = 1
DELIVERY_MAX_BATCH = 20
DELIVERY_DEFAULT_DELAY_MS = 1000
DELIVERY_MIN_DELAY_MS = 500
DELIVERY_MAX_DELAY_MS = 5000

# ----- Public ticket download rate limit -----
TICKET_RATE_LIMIT = _maybe_int("TICKET_RATE_LIMIT", 2)
TICKET_RATE_WINDOW_MS = _maybe_int("TICKET_RATE_WINDOW_MS", 60_000)

# ----- Extension sync handoff -----
SYNC_TOKEN_TTL_SECONDS = _maybe_int("SYNC_TOKEN_TTL_SECONDS", 300)

# ----- Roster import -----
# Keys are canonical headers: lowercased with every non-alphanumeric removed.
IMPORT_COLUMN_ALIASES = {
    "name": "name",
    "fullname": "name",
    "studentname": "name",
    "regno": "reg_no",
    "registrationno": "reg_no",
    "registrationnumber": "reg_no",
    "rollno": "reg_no",
    "email": "email",
    "emailaddress": "email",
    "mail": "email",
    "phone": "phone",
    "phoneno": "phone",
    "phonenumber": "phone",
    "phno": "phone",
    "mobile": "phone",
    "mobileno": "phone",
    "paymentstatus": "payment_status",
}

# Rich (payment-keyed) shape: "Id" carries the registration number
IMPORT_RICH_ALIASES = {
    "id": "reg_no",
}

IMPORT_ACCEPTED_PAYMENT_STATUSES = {
    s.strip().lower()
    for s in (_clean(os.getenv("IMPORT_ACCEPTED_PAYMENT_STATUSES"), "paid") or "paid").split(",")
    if s.strip()
}

IMPORT_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
IMPORT_PHONE_REGEX = re.compile(r"^\d{7,15}$")
IMPORT_PHONE_STRIP = re.compile(r"[\s\-\(\)\.\+]")

def validate_config() -> None:
    if TICKET_QR_URL_BASE and not TICKET_QR_URL_BASE.lower().startswith(("http://", "https://")):
        raise RuntimeError("TICKET_QR_URL_BASE must be an absolute http(s) URL")
    if S3_PREFIX and not S3_PREFIX.endswith("/"):
        raise RuntimeError("S3_PREFIX should end with '/' for clean key joins")
    if not EMAIL_DRY_RUN and not SENDER_EMAIL:
        raise RuntimeError("SMTP_FROM or SMTP_USER must be set unless EMAIL_DRY_RUN is enabled")
    if (TICKET_RATE_LIMIT or 0) < 1 or (TICKET_RATE_WINDOW_MS or 0) < 1:
        raise RuntimeError("TICKET_RATE_LIMIT and TICKET_RATE_WINDOW_MS must be positive")
