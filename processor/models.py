"""Typed views of the external records the jobs read and write."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup


class RecordSkipped(Exception):
    """A single source record cannot be processed; count it and move on."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


def rel_id(resource: Optional[Dict[str, Any]], name: str) -> Optional[str]:
    """Id of a to-one JSON:API relationship, as a string."""
    data = (((resource or {}).get("relationships") or {}).get(name) or {}).get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return None


def rel_ids(resource: Optional[Dict[str, Any]], name: str) -> List[str]:
    """Ids of a to-many JSON:API relationship."""
    data = (((resource or {}).get("relationships") or {}).get(name) or {}).get("data")
    if isinstance(data, list):
        return [str(d["id"]) for d in data if isinstance(d, dict) and d.get("id") is not None]
    return []


def clean_note_text(value: Optional[str]) -> str:
    """Plain text of a note that may carry HTML markup from the MTEK editor."""
    if not value:
        return ""
    if "<" not in value:
        return value.strip()
    return BeautifulSoup(value, "html.parser").get_text(" ", strip=True)


def first_value(value: Any) -> Any:
    """First element of an Airtable lookup/link array, or the value itself."""
    if isinstance(value, list):
        return value[0] if value else ""
    return "" if value is None else value


@dataclass
class Watermark:
    """Last fully processed UTC hour for a rolling target date."""
    target_date: str = ""
    last_processed_hour: int = -1

    @classmethod
    def from_dict(cls, data: Any) -> "Watermark":
        """Parse the persisted shape; anything unusable yields a fresh watermark."""
        if not isinstance(data, dict):
            return cls()
        target_date = data.get("targetDate")
        hour = data.get("lastProcessedHour")
        if not isinstance(target_date, str) or isinstance(hour, bool) or not isinstance(hour, int):
            return cls()
        if hour < -1 or hour > 23:
            return cls()
        return cls(target_date=target_date, last_processed_hour=hour)

    def to_dict(self) -> Dict[str, Any]:
        return {"targetDate": self.target_date, "lastProcessedHour": self.last_processed_hour}

    def reset_for(self, target_date: str) -> "Watermark":
        """Watermark to use for target_date; a different date starts from -1."""
        if self.target_date != target_date:
            return Watermark(target_date=target_date, last_processed_hour=-1)
        return Watermark(target_date=self.target_date, last_processed_hour=self.last_processed_hour)

    def advance(self, hour: int) -> None:
        if hour < self.last_processed_hour:
            raise ValueError(
                f"Watermark for {self.target_date} cannot move back from "
                f"{self.last_processed_hour} to {hour}"
            )
        self.last_processed_hour = hour


@dataclass
class Reservation:
    """MTEK reservation resource."""
    id: str
    status: str
    guest_email: Optional[str]
    user_id: Optional[str]
    class_session_id: Optional[str]
    spot_id: Optional[str]
    tag_ids: List[str]
    sort_key: str

    @classmethod
    def from_api(cls, resource: Dict[str, Any]) -> "Reservation":
        attrs = resource.get("attributes") or {}
        sort_key = attrs.get("class_session_min_datetime") or (
            f"{attrs.get('start_date') or ''}T{attrs.get('start_time') or ''}"
        )
        return cls(
            id=str(resource.get("id")),
            status=attrs.get("status") or "",
            guest_email=(attrs.get("guest_email") or "").strip() or None,
            user_id=rel_id(resource, "user"),
            class_session_id=rel_id(resource, "class_session"),
            spot_id=rel_id(resource, "spot"),
            tag_ids=rel_ids(resource, "tags"),
            sort_key=str(sort_key),
        )

    def has_tag(self, tag_id: str) -> bool:
        return str(tag_id) in self.tag_ids


@dataclass
class ClassSession:
    """MTEK class session resource."""
    id: str
    start_datetime: Optional[str]
    public_note: str
    class_type_display: str
    instructor_names: str
    location_id: Optional[str]

    @classmethod
    def from_api(cls, resource: Dict[str, Any]) -> "ClassSession":
        attrs = resource.get("attributes") or {}
        instructors = attrs.get("instructor_names")
        if isinstance(instructors, list):
            instructors = ", ".join(str(name) for name in instructors)
        return cls(
            id=str(resource.get("id")),
            start_datetime=attrs.get("start_datetime"),
            public_note=clean_note_text(attrs.get("public_note")),
            class_type_display=attrs.get("class_type_display") or "",
            instructor_names=instructors if isinstance(instructors, str) else "",
            location_id=rel_id(resource, "location"),
        )


@dataclass
class MtekUser:
    """MTEK user resource."""
    id: str
    email: Optional[str]
    first_name: str
    full_name: str
    phone_number: Optional[str]
    date_joined: Optional[str]

    @classmethod
    def from_api(cls, resource: Dict[str, Any]) -> "MtekUser":
        attrs = resource.get("attributes") or {}
        first = attrs.get("first_name") or ""
        last = attrs.get("last_name") or ""
        email = attrs.get("email") or attrs.get("email_address") or None
        return cls(
            id=str(resource.get("id")),
            email=email.strip() if isinstance(email, str) and email.strip() else None,
            first_name=first,
            full_name=attrs.get("full_name") or attrs.get("name") or f"{first} {last}".strip(),
            phone_number=attrs.get("phone_number"),
            date_joined=attrs.get("date_joined"),
        )


@dataclass
class Studio:
    """Row of the Airtable studios lookup table."""
    name: str
    email: str


@dataclass
class JobResult:
    """Counters and human-readable issues collected during one job run."""
    job: str
    counts: Dict[str, int] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)

    def incr(self, name: str, amount: int = 1) -> None:
        self.counts[name] = self.counts.get(name, 0) + amount

    def get(self, name: str) -> int:
        return self.counts.get(name, 0)

    def add_issue(self, message: str) -> None:
        self.issues.append(message)

    @property
    def failed(self) -> bool:
        return self.get("errors") > 0

    def summary(self) -> str:
        parts = ", ".join(f"{name}={value}" for name, value in sorted(self.counts.items()))
        return f"{self.job} finished: {parts or 'nothing to do'}"
