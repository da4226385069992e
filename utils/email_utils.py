# utils/email_utils.py
from __future__ import annotations

import html as html_lib
import logging
import re
import smtplib
import unicodedata
from email.message import EmailMessage
from email.utils import formataddr
from typing import Dict, Iterable, List, Optional

from config import (
    # Identity / auth
    SMTP_HOST,
    SMTP_PORT,
    SMTP_SECURITY,       # "ssl" | "starttls" | "none"
    SMTP_USERNAME,
    SMTP_PASSWORD,
    SENDER_EMAIL,
    SENDER_NAME,
    REPLY_TO,

    # Policy
    DEFAULT_BCC,
    EMAIL_SUBJECT_PREFIX,
    EMAIL_DRY_RUN,
    EMAIL_ALLOWLIST_REGEX,
)

logger = logging.getLogger(__name__)

TICKET_CID = "ticket-image"

# ---------- addresses & policy ----------
def _text(s) -> str:
    if s is None:
        return ""
    return unicodedata.normalize("NFC", str(s).replace("\xa0", " ")).strip()


def normalize_address(addr: str) -> str:
    return re.sub(r"\s+", "", _text(addr))


def split_addresses(raw: Optional[str]) -> List[str]:
    return [a for a in (normalize_address(x) for x in (raw or "").split(",")) if a]


def bcc_list(extra: Optional[str] = None) -> List[str]:
    """Caller BCC plus DEFAULT_BCC, deduped in order."""
    out: List[str] = []
    for addr in split_addresses(extra) + split_addresses(DEFAULT_BCC):
        if addr not in out:
            out.append(addr)
    return out


def subject_line(subject: str) -> str:
    subject = _text(subject)
    if EMAIL_SUBJECT_PREFIX and not subject.startswith(EMAIL_SUBJECT_PREFIX):
        subject = EMAIL_SUBJECT_PREFIX + subject
    return subject


def enforce_allowlist(addresses: Iterable[str]) -> None:
    if not EMAIL_ALLOWLIST_REGEX:
        return
    try:
        pattern = re.compile(EMAIL_ALLOWLIST_REGEX, re.I)
    except re.error:
        raise RuntimeError(f"Bad EMAIL_ALLOWLIST_REGEX: {EMAIL_ALLOWLIST_REGEX}")
    blocked = [a for a in addresses if not pattern.search(a)]
    if blocked:
        raise RuntimeError(f"Email blocked by allowlist: {', '.join(blocked)}")


def check_smtp_config() -> None:
    if EMAIL_DRY_RUN:
        return
    if not (SMTP_HOST and SMTP_PORT and SENDER_EMAIL):
        raise RuntimeError("SMTP config incomplete (host/port/sender)")
    if SMTP_SECURITY not in {"ssl", "starttls", "none"}:
        raise RuntimeError("SMTP_SECURITY must be 'ssl', 'starttls', or 'none'")
    if bool(SMTP_USERNAME) != bool(SMTP_PASSWORD):
        raise RuntimeError("SMTP_USER/SMTP_PASS must be provided together")

# ---------- templates ----------
def render_template(template: str, variables: Dict[str, str]) -> str:
    """Replace {{key}} placeholders; unknown placeholders are left as-is."""
    result = template or ""
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", str(value))
    return result


def html_to_text(html: str) -> str:
    """Plain-text alternative for clients that do not render HTML."""
    body = re.sub(r"<(style|head)[^>]*>.*?</\1>", "", html or "", flags=re.I | re.S)
    body = re.sub(r"<br\s*/?>|</p>|</h\d>", "\n", body, flags=re.I)
    body = html_lib.unescape(re.sub(r"<[^>]+>", "", body))
    lines = [ln.strip() for ln in body.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def build_email_html(body_text: str, variables: Dict[str, str]) -> str:
    """Wrap the rendered body text (one <p> per line) around the inline ticket image."""
    safe_vars = {k: html_lib.escape(str(v)) for k, v in variables.items()}
    rendered = render_template(html_lib.escape(body_text or "", quote=False), safe_vars)
    paragraphs = "".join(
        f'<p style="margin:0 0 12px 0; color:#333;">{line}</p>'
        for line in rendered.split("\n") if line.strip()
    )
    if not paragraphs:
        paragraphs = '<p style="color:#333;">Please find your ticket attached below.</p>'

    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family:Arial,sans-serif; max-width:600px; margin:0 auto; padding:20px; background-color:#f9fafb;">
  <div style="background:white; border-radius:12px; padding:32px; box-shadow:0 1px 3px rgba(0,0,0,0.1);">
    <h2 style="color:#7c3aed; margin:0 0 20px 0;">Your Event Ticket</h2>
    {paragraphs}
    <div style="margin:24px 0; text-align:center;">
      <img src="cid:{TICKET_CID}" alt="Your Ticket" style="max-width:100%; border-radius:8px;" />
    </div>
    <p style="color:#666; font-size:14px; margin-top:24px;">
      Please keep this ticket safe. You will need to present the QR code at the event for verification.
    </p>
  </div>
</body>
</html>""".strip()

# ---------- message & transport ----------
def build_ticket_message(
    recipient: str,
    subject: str,
    html: str,
    ticket_bytes: bytes,
    attachment_filename: str = "ticket.png",
    *,
    bcc: Optional[List[str]] = None,
    reply_to: Optional[str] = REPLY_TO,
) -> EmailMessage:
    """
    multipart/mixed
      multipart/alternative: text, multipart/related(html + PNG as cid:ticket-image)
      PNG attachment
    """
    msg = EmailMessage()
    msg["From"] = formataddr((_text(SENDER_NAME), SENDER_EMAIL or ""))
    msg["To"] = normalize_address(recipient)
    if bcc:
        msg["Bcc"] = ", ".join(bcc)
    if reply_to:
        msg["Reply-To"] = normalize_address(reply_to)
    msg["Subject"] = subject_line(subject)

    msg.set_content(html_to_text(html))
    msg.add_alternative(html, subtype="html")
    html_part = msg.get_payload()[1]
    html_part.add_related(
        ticket_bytes, maintype="image", subtype="png",
        cid=f"<{TICKET_CID}>", disposition="inline", filename=attachment_filename,
    )
    msg.add_attachment(ticket_bytes, maintype="image", subtype="png", filename=attachment_filename)
    return msg


def _connect() -> smtplib.SMTP:
    if SMTP_SECURITY == "ssl":
        return smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=30)
    server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30)
    if SMTP_SECURITY == "starttls":
        server.starttls()
    return server


def deliver(msg: EmailMessage) -> None:
    if EMAIL_DRY_RUN:
        logger.info("[DRY-RUN] Would send email → TO=%s BCC=%s SUBJ=%s",
                    msg.get("To", ""), msg.get("Bcc", ""), msg.get("Subject", ""))
        return
    with _connect() as server:
        if SMTP_USERNAME and SMTP_PASSWORD:
            server.login(SMTP_USERNAME, SMTP_PASSWORD)
        server.send_message(msg)
    logger.info("Email sent to %s", msg.get("To", ""))


def send_email_with_inline_ticket(
    recipient: str,
    subject: str,
    html: str,
    *,
    ticket_bytes: bytes,
    attachment_filename: str = "ticket.png",
    bcc: Optional[str] = None,
) -> None:
    """Send the ticket email. Merges DEFAULT_BCC, enforces the allowlist, honours dry-run."""
    check_smtp_config()
    blind = bcc_list(bcc)
    to = normalize_address(recipient)
    enforce_allowlist([to] + blind)
    deliver(build_ticket_message(to, subject, html, ticket_bytes, attachment_filename, bcc=blind))
