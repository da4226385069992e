from __future__ import annotations

import datetime
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class AttendanceSource(str, Enum):
    COUNTER = "counter"
    SCANNER = "scanner"


class RowStatus(str, Enum):
    VALID = "valid"
    DUPLICATE_IN_FILE = "duplicate_in_file"
    DUPLICATE_IN_STORE = "duplicate_in_store"
    REJECTED = "rejected"


@dataclass
class TextPosition:
    x: int
    y: int
    font_size: int = 24
    color: str = "#000000"


@dataclass
class BoxPosition:
    x: int
    y: int
    width: int = 200
    height: int = 200


@dataclass
class TicketTemplate:
    """Where the QR and attendee text go on the event's ticket image."""
    image_path: Optional[str] = None
    qr_position: Optional[BoxPosition] = None
    name_position: Optional[TextPosition] = None
    reg_no_position: Optional[TextPosition] = None
    rotate: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TicketTemplate":
        data = data or {}
        qr = data.get("qr_position")
        name = data.get("name_position")
        reg = data.get("reg_no_position")
        return cls(
            image_path=data.get("image_path") or None,
            qr_position=BoxPosition(**qr) if qr else None,
            name_position=TextPosition(**name) if name else None,
            reg_no_position=TextPosition(**reg) if reg else None,
            rotate=bool(data.get("rotate", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Event:
    id: int
    title: str
    date: datetime.datetime
    description: str = ""
    is_public_download: bool = False
    ticket_template: TicketTemplate = field(default_factory=TicketTemplate)
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    created_at: Optional[datetime.datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Event":
        return cls(
            id=row["id"],
            title=row["title"],
            date=row["date"],
            description=row.get("description") or "",
            is_public_download=bool(row.get("is_public_download")),
            ticket_template=TicketTemplate.from_dict(row.get("ticket_template")),
            email_subject=row.get("email_subject"),
            email_body=row.get("email_body"),
            created_at=row.get("created_at"),
        )


@dataclass
class Registration:
    id: int
    event_id: int
    name: str
    reg_no: str
    email: str
    phone: str = ""
    token: Optional[str] = None
    download_count: int = 0
    rate_limit_window_start: Optional[datetime.datetime] = None
    rate_limit_count: int = 0
    delivery_state: DeliveryState = DeliveryState.PENDING
    delivery_sent_at: Optional[datetime.datetime] = None
    delivery_error: Optional[str] = None
    created_at: Optional[datetime.datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Registration":
        return cls(
            id=row["id"],
            event_id=row["event_id"],
            name=row["name"],
            reg_no=row["reg_no"],
            email=row["email"],
            phone=row.get("phone") or "",
            token=row.get("token"),
            download_count=int(row.get("download_count") or 0),
            rate_limit_window_start=row.get("rate_limit_window_start"),
            rate_limit_count=int(row.get("rate_limit_count") or 0),
            delivery_state=DeliveryState(row.get("delivery_state") or DeliveryState.PENDING.value),
            delivery_sent_at=row.get("delivery_sent_at"),
            delivery_error=row.get("delivery_error"),
            created_at=row.get("created_at"),
        )

    def summary(self) -> Dict[str, Any]:
        """Public view: never includes the token or rate-limit bookkeeping."""
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "reg_no": self.reg_no,
            "email": self.email,
            "phone": self.phone,
            "delivery_state": self.delivery_state.value,
            "delivery_sent_at": self.delivery_sent_at,
            "token_assigned": bool(self.token),
        }


@dataclass
class Attendance:
    event_id: int
    email: str
    marked_at: datetime.datetime
    source: AttendanceSource
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Attendance":
        return cls(
            id=row.get("id"),
            event_id=row["event_id"],
            email=row["email"],
            marked_at=row["marked_at"],
            source=AttendanceSource(row["source"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "email": self.email,
            "marked_at": self.marked_at,
            "source": self.source.value,
        }


@dataclass
class AlreadyMarked:
    """Expected outcome of a repeat or concurrent scan; carries the first mark's time."""
    event_id: int
    email: str
    marked_at: datetime.datetime


@dataclass
class ImportRow:
    name: str
    reg_no: str
    email: str
    phone: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class RejectedRow:
    row: ImportRow
    reason: str
    status: RowStatus = RowStatus.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row.to_dict(), "reason": self.reason, "status": self.status.value}


@dataclass
class ImportResult:
    valid: List[ImportRow] = field(default_factory=list)
    rejected: List[RejectedRow] = field(default_factory=list)

    @property
    def stats(self) -> Dict[str, int]:
        by_status = {s: 0 for s in RowStatus}
        for r in self.rejected:
            by_status[r.status] += 1
        return {
            "total": len(self.valid) + len(self.rejected),
            "valid": len(self.valid),
            "rejected": len(self.rejected),
            "invalid": by_status[RowStatus.REJECTED],
            "duplicate_in_file": by_status[RowStatus.DUPLICATE_IN_FILE],
            "duplicate_in_store": by_status[RowStatus.DUPLICATE_IN_STORE],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": [r.to_dict() for r in self.valid],
            "rejected": [r.to_dict() for r in self.rejected],
            "stats": self.stats,
        }


@dataclass
class RecipientOutcome:
    registration_id: int
    name: str
    reg_no: str
    email: str
    status: DeliveryState
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "registration_id": self.registration_id,
            "name": self.name,
            "reg_no": self.reg_no,
            "email": self.email,
            "status": self.status.value,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class DeliveryEvent:
    type: str  # "progress" | "complete" | "error"
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass
class RateDecision:
    allowed: bool
    retry_after: float = 0.0  # seconds until the window resets (deny only)


@dataclass
class TicketArtifact:
    filename: str
    data: bytes
    content_type: str = "image/png"
    url: Optional[str] = None
