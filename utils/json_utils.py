# utils/json_utils.py
import dataclasses
import datetime
import json
from enum import Enum


def to_jsonable(value):
    """json.dumps default= hook for the types our payloads carry."""
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def dumps(obj) -> str:
    return json.dumps(obj, default=to_jsonable, separators=(",", ":"))


def sse_frame(payload: dict) -> str:
    """One server-sent-events frame: data: <json>\\n\\n"""
    return f"data: {dumps(payload)}\n\n"
