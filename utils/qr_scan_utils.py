# utils/qr_scan_utils.py
import json
import re
from typing import Any, Optional
from urllib.parse import urlparse, parse_qs

# Keys that may carry the ticket token (case-insensitive)
TOKEN_KEYS_LOWER = {"token", "t", "ticket", "qr"}

TOKEN_RE = re.compile(r"[A-Za-z0-9\-_=]{6,}")

def _find_token_in_obj(obj: Any) -> Optional[str]:
    """Recursively search dict/list for a token by key name."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            if str(k).strip().lower() in TOKEN_KEYS_LOWER and isinstance(v, str) and v:
                return v.strip()
        for v in obj.values():
            sub = _find_token_in_obj(v)
            if sub:
                return sub
    elif isinstance(obj, list):
        for v in obj:
            sub = _find_token_in_obj(v)
            if sub:
                return sub
    return None

def _extract_token_from_url(url: str) -> Optional[str]:
    try:
        u = urlparse(url)
    except ValueError:
        return None

    q = parse_qs(u.query or "")
    for k, vals in q.items():
        if k.lower() in TOKEN_KEYS_LOWER and vals:
            return vals[0].strip()

    # last path segment, e.g. https://host/t/<token>
    last = (u.path or "").rstrip("/").split("/")[-1]
    if last and TOKEN_RE.fullmatch(last):
        return last
    return None

def parse_scanned_text_to_token(text: str) -> Optional[str]:
    """
    Accept raw scanner text and return the ticket token.
    - JSON object with a token/t key (top-level or nested)
    - URL with ?token= / ?t= (or the token as the last path segment)
    - plain token
    """
    if not text:
        return None
    s = text.strip()

    if s.startswith("{") and s.endswith("}"):
        try:
            return _find_token_in_obj(json.loads(s))
        except json.JSONDecodeError:
            return None

    if s.startswith(("http://", "https://")):
        return _extract_token_from_url(s)

    if TOKEN_RE.fullmatch(s):
        return s

    return None
