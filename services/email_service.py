# services/email_service.py
from typing import Dict, Optional

from sqlalchemy.engine import Engine

from domain.models import Event, Registration, TicketArtifact
from services import event_service
from utils.email_utils import build_email_html, render_template, send_email_with_inline_ticket
from utils.ticket_utils import render_ticket_png


def _ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def long_date(value) -> str:
    """e.g. September 5th, 2026"""
    if not value:
        return ""
    return f"{value:%B} {_ordinal(value.day)}, {value.year}"


def template_vars(event: Event, registration: Registration) -> Dict[str, str]:
    return {
        "name": registration.name,
        "eventTitle": event.title,
        "regNo": registration.reg_no,
        "date": long_date(event.date),
    }


def compose(subject_template: str, body_template: str, variables: Dict[str, str]) -> tuple[str, str]:
    """Returns (subject, html)."""
    return render_template(subject_template, variables), build_email_html(body_template, variables)


def send_ticket_email(registration: Registration, subject: str, html: str, artifact: TicketArtifact) -> None:
    send_email_with_inline_ticket(
        recipient=registration.email,
        subject=subject,
        html=html,
        ticket_bytes=artifact.data,
        attachment_filename=f"ticket_{artifact.filename}",
    )


def send_test_email(
    engine: Engine,
    event_id: int,
    to: str,
    subject: Optional[str] = None,
    body: Optional[str] = None,
) -> None:
    """Render the event's template for a sample attendee and send it to one address."""
    event = event_service.get_event(engine, event_id)
    saved = event_service.get_email_template(engine, event_id)
    sample = Registration(id=0, event_id=event.id, name="Test Attendee", reg_no="TEST-001", email=to)
    subj, html = compose(subject or saved["subject"], body or saved["body"], template_vars(event, sample))
    png = render_ticket_png(
        event.ticket_template, token="SAMPLE-TICKET-TOKEN", name=sample.name, reg_no=sample.reg_no,
        event_title=event.title,
    )
    send_ticket_email(sample, f"[Test] {subj}", html, TicketArtifact(filename="sample.png", data=png))
