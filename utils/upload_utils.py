# utils/upload_utils.py
from __future__ import annotations

import io
import re
import zipfile
from typing import Any, Dict, Iterable, List, Optional, Set

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException
from xlrd import XLRDError

from config import (
    IMPORT_COLUMN_ALIASES,
    IMPORT_RICH_ALIASES,
    IMPORT_ACCEPTED_PAYMENT_STATUSES,
    IMPORT_EMAIL_REGEX,
    IMPORT_PHONE_REGEX,
    IMPORT_PHONE_STRIP,
)
from domain.errors import ValidationError
from domain.models import ImportResult, ImportRow, RejectedRow, RowStatus

EXCEL_SUFFIXES = (".xlsx", ".xls")

# Rejection reasons
R_NAME = "Invalid or missing Name"
R_REG_NO = "Missing Registration Number"
R_EMAIL = "Invalid or missing Email"
R_PHONE = "Invalid or missing Phone"
R_DUP_EMAIL_FILE = "Duplicate Email in file"
R_DUP_REG_FILE = "Duplicate RegNo in file"
R_DUP_EMAIL_STORE = "Email already registered"
R_DUP_REG_STORE = "RegNo already registered"


def _canon_header(h: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(h or "").strip().lower())


def clean_field(val: Any) -> str:
    if val is None:
        return ""
    s = str(val).replace("\xa0", " ").strip()
    if s.lower() in {"nan", "none", "null", "nat"}:
        return ""
    # Spreadsheet numbers read back as "1234.0"
    if re.fullmatch(r"\d+\.0", s):
        s = s[:-2]
    return s


def normalize_email(email: Any) -> str:
    return re.sub(r"\s+", "", clean_field(email)).lower()


def normalize_phone(phone: Any) -> str:
    return clean_field(phone)


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(IMPORT_EMAIL_REGEX.match(email))


def is_valid_phone(phone: str) -> bool:
    return bool(IMPORT_PHONE_REGEX.match(IMPORT_PHONE_STRIP.sub("", phone or "")))


def read_tabular(data: bytes, filename: Optional[str] = None) -> List[Dict[str, Any]]:
    """Read the first sheet (Excel) or the CSV body into a list of row dicts, all cells as text."""
    if not data:
        raise ValidationError("File is empty")
    buf = io.BytesIO(data)
    name = (filename or "").lower()
    try:
        if name.endswith(EXCEL_SUFFIXES):
            df = pd.read_excel(buf, sheet_name=0, dtype=str)
        else:
            df = pd.read_csv(buf, dtype=str, keep_default_na=False, skip_blank_lines=True, encoding="utf-8-sig")
    except (
        ValueError,
        KeyError,
        zipfile.BadZipFile,
        InvalidFileException,
        XLRDError,
        pd.errors.ParserError,
        pd.errors.EmptyDataError,
    ) as e:
        raise ValidationError(f"Could not read file: {e}") from e

    df = df.dropna(how="all")
    if df.empty:
        raise ValidationError("File is empty")
    df = df.fillna("")
    return df.to_dict(orient="records")


def is_rich_shape(headers: Iterable[str]) -> bool:
    """Rich exports are keyed by a payment-status column."""
    return any(IMPORT_COLUMN_ALIASES.get(_canon_header(h)) == "payment_status" for h in headers)


def canon_record(record: Dict[str, Any], rich: bool) -> Dict[str, str]:
    """Map arbitrary header spellings onto name/reg_no/email/phone/payment_status."""
    aliases = {**IMPORT_COLUMN_ALIASES, **IMPORT_RICH_ALIASES} if rich else IMPORT_COLUMN_ALIASES
    out: Dict[str, str] = {}
    for k, v in record.items():
        target = aliases.get(_canon_header(k))
        if target and not out.get(target):
            out[target] = clean_field(v)
    return out


def classify_rows(
    records: List[Dict[str, Any]],
    existing_emails: Set[str],
    existing_reg_nos: Set[str],
) -> ImportResult:
    """
    Give every source row exactly one classification.

    Order: structural checks → duplicate earlier in this batch → duplicate in the store snapshot → valid.
    Only accepted rows feed the in-file sets, so the first *accepted* occurrence wins.
    """
    result = ImportResult()
    if not records:
        return result

    headers: Set[str] = set()
    for rec in records:
        headers.update(rec.keys())
    rich = is_rich_shape(headers)

    seen_emails: Set[str] = set()
    seen_reg_nos: Set[str] = set()

    for rec in records:
        c = canon_record(rec, rich)
        row = ImportRow(
            name=c.get("name", ""),
            reg_no=c.get("reg_no", ""),
            email=normalize_email(c.get("email")),
            phone=normalize_phone(c.get("phone")),
        )

        reason = _structural_reason(row, c, rich)
        if reason:
            result.rejected.append(RejectedRow(row, reason, RowStatus.REJECTED))
            continue

        if row.email in seen_emails:
            result.rejected.append(RejectedRow(row, R_DUP_EMAIL_FILE, RowStatus.DUPLICATE_IN_FILE))
            continue
        if row.reg_no in seen_reg_nos:
            result.rejected.append(RejectedRow(row, R_DUP_REG_FILE, RowStatus.DUPLICATE_IN_FILE))
            continue

        if row.email in existing_emails:
            result.rejected.append(RejectedRow(row, R_DUP_EMAIL_STORE, RowStatus.DUPLICATE_IN_STORE))
            continue
        if row.reg_no in existing_reg_nos:
            result.rejected.append(RejectedRow(row, R_DUP_REG_STORE, RowStatus.DUPLICATE_IN_STORE))
            continue

        seen_emails.add(row.email)
        seen_reg_nos.add(row.reg_no)
        result.valid.append(row)

    return result


def _structural_reason(row: ImportRow, c: Dict[str, str], rich: bool) -> Optional[str]:
    if rich:
        status = c.get("payment_status", "")
        if status.lower() not in IMPORT_ACCEPTED_PAYMENT_STATUSES:
            return f'Payment Status is "{status}" (required "Paid")'
    if len(row.name) < 2:
        return R_NAME
    if not row.reg_no:
        return R_REG_NO
    if not is_valid_email(row.email):
        return R_EMAIL
    # Phone is only required by the rich shape
    if rich and not is_valid_phone(row.phone):
        return R_PHONE
    return None
