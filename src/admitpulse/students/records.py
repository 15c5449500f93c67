"""Conversion between loose student records (CSV rows, JSON blobs) and Student objects."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pandas as pd

from admitpulse.errors import InvalidStudentError
from admitpulse.students.types import Channel, ContactOutcome, LifecycleStatus, RiskLevel, Student

STUDENT_COLUMNS = [
    "student_id",
    "name",
    "phone",
    "email",
    "timezone",
    "status",
    "created_at",
    "last_activity_at",
    "contact_attempts",
    "last_contact_at",
    "last_contact_channel",
    "last_contact_outcome",
    "opted_out_channels",
    "risk_level",
    "risk_score",
    "risk_factors",
    "last_assessed_at",
    "version",
]


def safe_text(value: Any) -> str:
    if is_missing(value):
        return ""
    return str(value).strip()


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def normalize_id(x: Any) -> str:
    s = str(x).strip()
    if s.endswith(".0") and s[:-2].isdigit():
        s = s[:-2]
    if s.isdigit():
        s2 = s.lstrip("0")
        return s2 if s2 != "" else "0"
    return s


def split_list(value: Any) -> List[str]:
    """Split ';'-separated text or pass through an iterable of strings."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(part).strip() for part in value if str(part).strip()]
    if is_missing(value):
        return []
    return [part.strip() for part in str(value).split(";") if part.strip()]


def parse_timestamp(value: Any, field_name: str = "timestamp") -> Optional[datetime]:
    """Parse a datetime, ISO string or epoch milliseconds into an aware UTC datetime."""
    if is_missing(value):
        return None
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    else:
        try:
            parsed = pd.to_datetime(str(value).strip(), utc=True).to_pydatetime()
        except (ValueError, TypeError, OverflowError) as exc:
            raise InvalidStudentError(f"{field_name}: cannot parse timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _enum_or_none(enum_cls, value: Any, field_name: str):
    text = safe_text(value).lower()
    if not text:
        return None
    try:
        return enum_cls(text)
    except ValueError as exc:
        raise InvalidStudentError(f"{field_name}: unknown value {value!r}") from exc


def _int(value: Any, field_name: str, default: int = 0) -> int:
    if is_missing(value):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise InvalidStudentError(f"{field_name}: expected an integer, got {value!r}") from exc


def student_from_record(record: Mapping[str, Any]) -> Student:
    """Validate a loose mapping and build a Student."""
    raw_id = record.get("student_id", record.get("id"))
    if is_missing(raw_id):
        raise InvalidStudentError("student record is missing student_id")
    student_id = normalize_id(raw_id)

    status = _enum_or_none(LifecycleStatus, record.get("status"), "status")
    if status is None:
        raise InvalidStudentError(f"student {student_id}: status is required")

    created_at = parse_timestamp(record.get("created_at", record.get("createdAt")), "created_at")
    if created_at is None:
        raise InvalidStudentError(f"student {student_id}: created_at is required")

    last_activity_at = parse_timestamp(
        record.get("last_activity_at", record.get("lastActivityAt")), "last_activity_at"
    )
    if last_activity_at is not None and last_activity_at < created_at:
        last_activity_at = created_at

    try:
        opted_out = frozenset(Channel(part.lower()) for part in split_list(record.get("opted_out_channels")))
    except ValueError as exc:
        raise InvalidStudentError(f"student {student_id}: unknown opted-out channel") from exc

    risk_score = _int(record.get("risk_score"), "risk_score")
    if not 0 <= risk_score <= 100:
        raise InvalidStudentError(f"student {student_id}: risk_score {risk_score} outside [0, 100]")

    contact_attempts = _int(record.get("contact_attempts"), "contact_attempts")
    if contact_attempts < 0:
        raise InvalidStudentError(f"student {student_id}: contact_attempts cannot be negative")

    return Student(
        student_id=student_id,
        status=status,
        created_at=created_at,
        last_activity_at=last_activity_at,
        contact_attempts=contact_attempts,
        last_contact_at=parse_timestamp(record.get("last_contact_at"), "last_contact_at"),
        last_contact_channel=_enum_or_none(Channel, record.get("last_contact_channel"), "last_contact_channel"),
        last_contact_outcome=_enum_or_none(ContactOutcome, record.get("last_contact_outcome"), "last_contact_outcome"),
        opted_out_channels=opted_out,
        risk_level=_enum_or_none(RiskLevel, record.get("risk_level"), "risk_level"),
        risk_score=risk_score,
        risk_factors=split_list(record.get("risk_factors")),
        last_assessed_at=parse_timestamp(record.get("last_assessed_at"), "last_assessed_at"),
        name=safe_text(record.get("name")),
        phone=normalize_phone(record.get("phone")),
        email=safe_text(record.get("email")),
        timezone=safe_text(record.get("timezone")),
        version=_int(record.get("version"), "version"),
    )


def normalize_phone(value: Any) -> str:
    text = safe_text(value)
    if not text:
        return ""
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return ""
    return f"+{digits}" if text.startswith("+") or len(digits) > 10 else digits


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def student_to_record(student: Student) -> Dict[str, Any]:
    return {
        "student_id": student.student_id,
        "name": student.name,
        "phone": student.phone,
        "email": student.email,
        "timezone": student.timezone,
        "status": student.status.value,
        "created_at": _iso(student.created_at),
        "last_activity_at": _iso(student.last_activity_at),
        "contact_attempts": student.contact_attempts,
        "last_contact_at": _iso(student.last_contact_at),
        "last_contact_channel": student.last_contact_channel.value if student.last_contact_channel else "",
        "last_contact_outcome": student.last_contact_outcome.value if student.last_contact_outcome else "",
        "opted_out_channels": ";".join(sorted(channel.value for channel in student.opted_out_channels)),
        "risk_level": student.risk_level.value if student.risk_level else "",
        "risk_score": student.risk_score,
        "risk_factors": "; ".join(student.risk_factors),
        "last_assessed_at": _iso(student.last_assessed_at),
        "version": student.version,
    }


def load_students_csv(path: Path | str) -> List[Student]:
    """Load a students CSV; every row must validate."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Students file not found: {path}")
    df = pd.read_csv(path, dtype={"student_id": str, "phone": str})
    df.columns = [str(c).strip() for c in df.columns]
    if "student_id" not in df.columns:
        raise ValueError(f"id column 'student_id' not found in {path}")
    return [student_from_record(row) for row in df.to_dict(orient="records")]


def write_students_csv(students: Iterable[Student], path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame([student_to_record(s) for s in students], columns=STUDENT_COLUMNS)
    frame.to_csv(path, index=False)
    return path
