"""
Contact and task schema.

Records are owned by the remote store; these dataclasses are the client's
typed view of a row. Optional fields use None as the absent marker, never "".

Task lifecycle on the board:
  todo → in_progress → done   (any column to any column by drag)
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union
import json


class TaskStatus(Enum):
    """Board columns, in display order."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "TaskStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.TODO


class TaskPriority(Enum):
    """Task priorities, lowest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "TaskPriority":
        try:
            return cls(value)
        except ValueError:
            return cls.MEDIUM


PRIORITY_RANK = [p.value for p in TaskPriority]

# Optional free-text contact fields, normalized to None when blank
CONTACT_TEXT_FIELDS = (
    "phone", "company", "job_title", "address", "city",
    "state", "postal_code", "country", "notes",
)

CONTACT_SEARCH_FIELDS = ("first_name", "last_name", "email", "company")
TASK_SEARCH_FIELDS = ("title", "description")

CONTACT_SORT_KEYS = ("name", "company", "created_at")
TASK_SORT_KEYS = ("created_at", "updated_at", "due_date", "priority", "title")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Union[str, datetime, None]) -> Optional[str]:
    dt = parse_dt(value)
    return dt.isoformat() if dt else None


def _json_list(value: Any) -> Optional[list]:
    """Decode list columns that may arrive as JSON text (SQLite) or lists (REST)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return None
    return list(value) if isinstance(value, (list, tuple)) else None


@dataclass
class FileAttachment:
    """A stored file linked to a contact."""
    name: str
    url: str
    size: int
    type: str = ""
    uploaded_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "size": self.size,
            "type": self.type,
            "uploaded_at": self.uploaded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileAttachment":
        return cls(
            name=data.get("name", ""),
            url=data.get("url", ""),
            size=int(data.get("size") or 0),
            type=data.get("type") or "",
            uploaded_at=parse_dt(data.get("uploaded_at")) or utc_now(),
        )


@dataclass
class Contact:
    """A person in the address book."""

    id: str
    first_name: str
    last_name: str
    email: str
    user_id: Optional[str] = None

    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None

    tags: Optional[List[str]] = None
    attachments: Optional[List[FileAttachment]] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
        }
        for name in CONTACT_TEXT_FIELDS:
            data[name] = getattr(self, name)
        data["tags"] = self.tags
        data["attachments"] = (
            [a.to_dict() for a in self.attachments] if self.attachments is not None else None
        )
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contact":
        attachments = _json_list(data.get("attachments"))
        return cls(
            id=str(data.get("id", "")),
            user_id=data.get("user_id"),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data.get("email", ""),
            tags=_json_list(data.get("tags")),
            attachments=(
                [FileAttachment.from_dict(a) for a in attachments] if attachments is not None else None
            ),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
            updated_at=parse_dt(data.get("updated_at")) or utc_now(),
            **{name: data.get(name) for name in CONTACT_TEXT_FIELDS},
        )


@dataclass
class Task:
    """A to-do item, optionally linked to a contact."""

    id: str
    title: str
    user_id: Optional[str] = None
    description: Optional[str] = None

    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM

    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    assigned_to: Optional[str] = None
    contact_id: Optional[str] = None
    tags: Optional[List[str]] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Past due and not done. A done task is never overdue."""
        if self.status == TaskStatus.DONE or self.due_date is None:
            return False
        return self.due_date < (parse_dt(now) or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "assigned_to": self.assigned_to,
            "contact_id": self.contact_id,
            "tags": self.tags,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data.get("id", "")),
            user_id=data.get("user_id"),
            title=data.get("title", ""),
            description=data.get("description"),
            status=TaskStatus.from_str(data.get("status")),
            priority=TaskPriority.from_str(data.get("priority")),
            due_date=parse_dt(data.get("due_date")),
            completed_at=parse_dt(data.get("completed_at")),
            assigned_to=data.get("assigned_to"),
            contact_id=data.get("contact_id"),
            tags=_json_list(data.get("tags")),
            created_at=parse_dt(data.get("created_at")) or utc_now(),
            updated_at=parse_dt(data.get("updated_at")) or utc_now(),
        )


# ── Create inputs ────────────────────────────────────────────────────────────

@dataclass
class NewContact:
    """Fields accepted when creating a contact."""
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


@dataclass
class NewTask:
    """Fields accepted when creating a task."""
    title: str
    description: Optional[str] = None
    status: Union[TaskStatus, str, None] = None
    priority: Union[TaskPriority, str, None] = None
    due_date: Union[datetime, str, None] = None
    assigned_to: Optional[str] = None
    contact_id: Optional[str] = None
    tags: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}


# ── Query parameters (not persisted) ─────────────────────────────────────────

@dataclass(frozen=True)
class ContactFilters:
    search: Optional[str] = None
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None


@dataclass(frozen=True)
class TaskFilters:
    search: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    contact_id: Optional[str] = None
    due_date_from: Optional[str] = None
    due_date_to: Optional[str] = None
    sort_by: Optional[str] = None
    sort_order: Optional[str] = None
