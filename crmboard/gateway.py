"""
Contact and task gateways.

Translate domain operations into table-store calls:

  list(filters)      -> TableQuery (search / equality / range / one sort group)
  get(id)            -> row or NotFound
  create(input)      -> normalized insert
  update(id, changes)-> normalized partial update
  delete(id)

Optional text is trimmed and blank becomes None before anything is sent, so
"cleared" and "never set" look the same once stored.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .backends import TableBackend, TableQuery
from .errors import NotFound, RemoteOperationFailed, StoreError
from .schema import (
    CONTACT_SEARCH_FIELDS,
    CONTACT_TEXT_FIELDS,
    PRIORITY_RANK,
    TASK_SEARCH_FIELDS,
    Contact,
    ContactFilters,
    FileAttachment,
    NewContact,
    NewTask,
    Task,
    TaskFilters,
    TaskPriority,
    TaskStatus,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def clean_text(value: Any) -> Optional[str]:
    """Trim a text field; blank or missing becomes None."""
    if value is None:
        return None
    return str(value).strip() or None


def clean_ref(value: Any) -> Optional[str]:
    """Reference ids: any falsy value becomes None."""
    return str(value) if value else None


def clean_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if not value:
        return None
    tags = [t.strip() for t in value if t and t.strip()]
    return tags or None


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class EntityGateway:
    """Shared CRUD plumbing for one table."""

    table = ""
    noun = ""
    model = None
    updatable = ()

    def __init__(self, backend: TableBackend):
        self.backend = backend

    def _failed(self, action: str, error: Exception) -> RemoteOperationFailed:
        logger.error(f"{self.table}: {action} failed: {error}")
        return RemoteOperationFailed(f"Failed to {action} {self.noun}: {error}")

    def build_query(self, filters) -> TableQuery:
        raise NotImplementedError

    def normalize_new(self, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def normalize_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def prepare_update(self, entity_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        """Last adjustment of normalized changes; may read the stored row."""
        return values

    def list(self, filters=None) -> list:
        query = self.build_query(filters)
        try:
            rows = self.backend.select(self.table, query)
        except StoreError as e:
            raise RemoteOperationFailed(f"Failed to fetch {self.table}: {e}") from e
        return [self.model.from_dict(r) for r in rows or []]

    def get(self, entity_id: str):
        try:
            row = self.backend.select_one(self.table, entity_id)
        except StoreError as e:
            raise self._failed("fetch", e) from e
        if not row:
            raise NotFound(f"{self.noun.capitalize()} not found")
        return self.model.from_dict(row)

    def create(self, data):
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        values = self.normalize_new(dict(data))
        try:
            row = self.backend.insert(self.table, values)
        except StoreError as e:
            raise self._failed("create", e) from e
        entity = self.model.from_dict(row)
        logger.info(f"Created {self.noun} {entity.id}")
        return entity

    def update(self, entity_id: str, changes: Optional[Dict[str, Any]] = None):
        unknown = set(changes or {}) - set(self.updatable)
        if unknown:
            raise ValueError(f"Cannot update {self.noun} field(s): {', '.join(sorted(unknown))}")
        values = self.normalize_changes(dict(changes or {}))
        values["updated_at"] = utc_now().isoformat()
        try:
            values = self.prepare_update(entity_id, values)
            row = self.backend.update(self.table, entity_id, values)
        except StoreError as e:
            raise self._failed("update", e) from e
        if not row:
            raise NotFound(f"{self.noun.capitalize()} not found")
        return self.model.from_dict(row)

    def delete(self, entity_id: str) -> None:
        try:
            self.backend.delete(self.table, entity_id)
        except StoreError as e:
            raise self._failed("delete", e) from e
        logger.info(f"Deleted {self.noun} {entity_id}")


class ContactGateway(EntityGateway):
    table = "contacts"
    noun = "contact"
    model = Contact
    updatable = ("first_name", "last_name", "email", *CONTACT_TEXT_FIELDS, "tags", "attachments")

    def build_query(self, filters: Optional[ContactFilters]) -> TableQuery:
        filters = filters or ContactFilters()
        query = TableQuery()

        if filters.search and filters.search.strip() != "":
            query.ilike_any(CONTACT_SEARCH_FIELDS, filters.search)

        ascending = filters.sort_order != "desc"
        if filters.sort_by == "name":
            query.order("last_name", ascending).order("first_name", ascending)
        elif filters.sort_by == "company":
            query.order("company", ascending, nulls_last=True)
        else:
            # created_at, missing, or unrecognized: newest first regardless of order
            query.order("created_at", ascending=False)
        return query

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for name in ("first_name", "last_name", "email"):
            if name in data:
                values[name] = (data[name] or "").strip()
        for name in CONTACT_TEXT_FIELDS:
            if name in data:
                values[name] = clean_text(data[name])
        if "tags" in data:
            values["tags"] = clean_tags(data["tags"])
        if "attachments" in data:
            attachments = data["attachments"]
            values["attachments"] = [
                a.to_dict() if isinstance(a, FileAttachment) else dict(a) for a in attachments
            ] if attachments else None
        return values

    def normalize_new(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = self._normalize(data)
        for name in CONTACT_TEXT_FIELDS:
            values.setdefault(name, None)
        values.setdefault("tags", None)
        return values

    def normalize_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._normalize(changes)

    def create(self, data: Union[NewContact, Dict[str, Any]]) -> Contact:
        return super().create(data)


class TaskGateway(EntityGateway):
    table = "tasks"
    noun = "task"
    model = Task
    updatable = (
        "title", "description", "status", "priority", "due_date",
        "assigned_to", "contact_id", "tags",
    )

    def build_query(self, filters: Optional[TaskFilters]) -> TableQuery:
        filters = filters or TaskFilters()
        query = TableQuery()

        if filters.search and filters.search.strip() != "":
            query.ilike_any(TASK_SEARCH_FIELDS, filters.search)

        if filters.status:
            query.eq("status", _enum_value(filters.status))
        if filters.priority:
            query.eq("priority", _enum_value(filters.priority))
        if filters.assigned_to:
            query.eq("assigned_to", filters.assigned_to)
        if filters.contact_id:
            query.eq("contact_id", filters.contact_id)
        if filters.due_date_from:
            query.gte("due_date", to_iso(filters.due_date_from))
        if filters.due_date_to:
            query.lte("due_date", to_iso(filters.due_date_to))

        ascending = filters.sort_order != "desc"
        if filters.sort_by == "due_date":
            query.order("due_date", ascending, nulls_last=True)
        elif filters.sort_by == "priority":
            query.order("priority", ascending, rank=PRIORITY_RANK)
        elif filters.sort_by == "title":
            query.order("title", ascending)
        elif filters.sort_by == "updated_at":
            query.order("updated_at", ascending)
        else:
            query.order("created_at", ascending=False)
        return query

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        if "title" in data:
            values["title"] = (data["title"] or "").strip()
        if "description" in data:
            values["description"] = clean_text(data["description"])
        if "status" in data:
            status = TaskStatus.from_str(_enum_value(data["status"]))
            values["status"] = status.value
            # Stamped on entering done, cleared on leaving it
            values["completed_at"] = utc_now().isoformat() if status == TaskStatus.DONE else None
        if "priority" in data:
            values["priority"] = TaskPriority.from_str(_enum_value(data["priority"])).value
        if "due_date" in data:
            values["due_date"] = to_iso(data["due_date"]) if data["due_date"] else None
        for name in ("assigned_to", "contact_id"):
            if name in data:
                values[name] = clean_ref(data[name])
        if "tags" in data:
            values["tags"] = clean_tags(data["tags"])
        return values

    def normalize_new(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data.setdefault("status", TaskStatus.TODO)
        if data["status"] is None:
            data["status"] = TaskStatus.TODO
        if data.get("priority") is None:
            data["priority"] = TaskPriority.MEDIUM
        values = self._normalize(data)
        for name in ("description", "due_date", "assigned_to", "contact_id", "tags"):
            values.setdefault(name, None)
        return values

    def normalize_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._normalize(changes)

    def prepare_update(self, entity_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        if values.get("status") != TaskStatus.DONE.value:
            return values
        current = self.backend.select_one(self.table, entity_id)
        if current and current.get("status") == TaskStatus.DONE.value:
            # Re-saving a done task keeps its original completion time
            values.pop("completed_at", None)
        return values

    def create(self, data: Union[NewTask, Dict[str, Any]]) -> Task:
        return super().create(data)
