# utils/ticket_utils.py
from __future__ import annotations

import io
import re
from pathlib import Path
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from PIL import Image, ImageDraw, ImageFont

# All knobs come from config (no env reads, no magic strings)
from config import (
    QR_IMAGE_OPTS,
    TICKET_QR_URL_BASE,
    TEMPLATE_ROOT,
    PLAIN_TICKET_SIZE,
    PLAIN_TICKET_QR_BOX,
    TEMPLATE_DEFAULT_QR_BOX,
    TEMPLATE_DEFAULT_NAME_POS,
)
from domain.errors import ValidationError
from domain.models import BoxPosition, TextPosition, TicketTemplate

# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────
def _add_query_params(url: str, extra: dict[str, str]) -> str:
    """Return url with extra query params appended (overwriting existing keys)."""
    parts = urlparse(url)
    q = parse_qs(parts.query)
    for k, v in extra.items():
        if v is None or v == "":
            continue
        q[k] = [str(v)]
    new_query = urlencode(q, doseq=True)
    return urlunparse(parts._replace(query=new_query))


def safe_name(value: str | None) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", str(value or "ticket"))


def _qr_image(data: str) -> Image.Image:
    """Generate a QR image with config-driven options."""
    qr = qrcode.QRCode(
        version=QR_IMAGE_OPTS.get("version", None),
        error_correction=QR_IMAGE_OPTS.get("error_correction", ERROR_CORRECT_L),
        box_size=QR_IMAGE_OPTS.get("box_size", 10),
        border=QR_IMAGE_OPTS.get("border", 4),
    )
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")


def _font(size: int) -> ImageFont.ImageFont:
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 has no sized default font
        return ImageFont.load_default()


def _draw_text(draw: ImageDraw.ImageDraw, text: str, pos: TextPosition) -> None:
    # y is the text baseline, as on a canvas
    draw.text((pos.x, pos.y - pos.font_size), text, fill=pos.color or "#000000", font=_font(pos.font_size))


def _paste_qr(canvas: Image.Image, content: str, box: BoxPosition) -> None:
    qr = _qr_image(content).resize((box.width, box.height), Image.Resampling.NEAREST)
    canvas.paste(qr, (box.x, box.y))

# ──────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────
def qr_content_for(token: str) -> str:
    """What the ticket QR encodes: the bare token, or the verifier URL carrying it."""
    if TICKET_QR_URL_BASE:
        return _add_query_params(TICKET_QR_URL_BASE, {"token": token})
    return token


def resolve_template_path(image_path: str) -> Path:
    """Template images must live under TEMPLATE_ROOT."""
    root = Path(TEMPLATE_ROOT).resolve()
    path = (root / image_path.lstrip("/")).resolve()
    if not path.is_relative_to(root):
        raise ValidationError(f"Template image path is outside the template folder: {image_path}")
    if not path.is_file():
        raise ValidationError(f"Ticket template image not found: {image_path}")
    return path


def render_ticket_png(
    template: TicketTemplate,
    *,
    token: str,
    name: str,
    reg_no: str,
    event_title: str = "",
) -> bytes:
    """
    Compose the ticket: template image (or a plain card) + QR + attendee text.
    Returns PNG bytes.
    """
    content = qr_content_for(token)

    if template.image_path:
        canvas = Image.open(resolve_template_path(template.image_path)).convert("RGB")
        draw = ImageDraw.Draw(canvas)
        _paste_qr(canvas, content, template.qr_position or BoxPosition(**TEMPLATE_DEFAULT_QR_BOX))
        if name:
            _draw_text(draw, name, template.name_position or TextPosition(**TEMPLATE_DEFAULT_NAME_POS))
        if template.reg_no_position and reg_no:
            _draw_text(draw, reg_no, template.reg_no_position)
    else:
        width, height = PLAIN_TICKET_SIZE
        canvas = Image.new("RGB", (width, height), "white")
        draw = ImageDraw.Draw(canvas)
        if event_title:
            _draw_text(draw, event_title, TextPosition(x=40, y=70, font_size=32))
        _paste_qr(canvas, content, BoxPosition(**PLAIN_TICKET_QR_BOX))
        _draw_text(draw, name, TextPosition(x=40, y=600, font_size=32))
        if reg_no:
            _draw_text(draw, reg_no, TextPosition(x=40, y=650, font_size=24, color="#444444"))

    if template.rotate:
        canvas = canvas.rotate(-90, expand=True)

    out = io.BytesIO()
    canvas.save(out, format="PNG")
    return out.getvalue()
