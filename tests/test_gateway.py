"""
Tests for the contact and task gateways over the SQLite store.
"""
import pytest

from crmboard.backends import TableBackend
from crmboard.errors import NotFound, RemoteOperationFailed, StoreError
from crmboard.gateway import ContactGateway, TaskGateway, clean_tags, clean_text
from crmboard.schema import (
    ContactFilters,
    NewContact,
    NewTask,
    TaskFilters,
    TaskPriority,
    TaskStatus,
)


@pytest.fixture
def contacts(backend):
    return ContactGateway(backend)


@pytest.fixture
def tasks(backend):
    return TaskGateway(backend)


class BrokenBackend(TableBackend):
    """Store that fails every call."""

    def select(self, table, query):
        raise StoreError("connection refused")

    def select_one(self, table, row_id):
        raise StoreError("connection refused")

    def insert(self, table, values):
        raise StoreError("duplicate key value")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Normalization
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestCleaning:

    def test_clean_text(self):
        assert clean_text("  Acme ") == "Acme"
        assert clean_text("   ") is None
        assert clean_text("") is None
        assert clean_text(None) is None

    def test_clean_tags(self):
        assert clean_tags(["vip", " ", "lead "]) == ["vip", "lead"]
        assert clean_tags([]) is None


class TestContactGateway:

    def test_create_normalizes_blank_optionals(self, contacts):
        contact = contacts.create(NewContact(
            first_name=" Ada ", last_name="Lovelace", email="ada@example.com",
            phone="   ", company=" Acme ", notes="",
        ))
        assert contact.first_name == "Ada"
        assert contact.phone is None
        assert contact.notes is None
        assert contact.company == "Acme"
        assert contact.user_id == "user-1"

    def test_get_missing_raises_not_found(self, contacts):
        with pytest.raises(NotFound, match="Contact not found"):
            contacts.get("missing-id")

    def test_search_matches_any_field_case_insensitively(self, contacts):
        contacts.create({"first_name": "Ada", "last_name": "L", "email": "a@x.io", "company": "Acme Corp"})
        contacts.create({"first_name": "Bob", "last_name": "Acmeson", "email": "b@x.io"})
        contacts.create({"first_name": "Cy", "last_name": "Z", "email": "cy@other.io"})
        found = contacts.list(ContactFilters(search="acme"))
        assert {c.first_name for c in found} == {"Ada", "Bob"}

    def test_blank_search_returns_everything(self, contacts):
        contacts.create({"first_name": "Ada", "last_name": "L", "email": "a@x.io"})
        contacts.create({"first_name": "Bob", "last_name": "M", "email": "b@x.io"})
        assert len(contacts.list(ContactFilters(search="   "))) == 2

    def test_empty_search_same_as_no_filters(self, contacts):
        for name in ("Ada", "Bob", "Cy"):
            contacts.create({"first_name": name, "last_name": "L", "email": f"{name}@x.io"})
        unfiltered = [c.id for c in contacts.list(None)]
        assert [c.id for c in contacts.list(ContactFilters(search=""))] == unfiltered
        assert [c.id for c in contacts.list(ContactFilters(sort_by="bogus"))] == unfiltered

    def test_create_then_get_round_trip(self, contacts):
        created = contacts.create({"first_name": "Ada", "last_name": "L", "email": "a@x.io", "city": "London"})
        fetched = contacts.get(created.id)
        assert fetched == created
        assert fetched.country is None
        assert fetched.attachments is None

    def test_sort_by_name(self, contacts):
        contacts.create({"first_name": "Zed", "last_name": "Adams", "email": "z@x.io"})
        contacts.create({"first_name": "Amy", "last_name": "Adams", "email": "a@x.io"})
        contacts.create({"first_name": "Bo", "last_name": "Brown", "email": "b@x.io"})
        names = [c.full_name for c in contacts.list(ContactFilters(sort_by="name", sort_order="asc"))]
        assert names == ["Amy Adams", "Zed Adams", "Bo Brown"]

    def test_default_sort_is_newest_first(self, contacts):
        first = contacts.create({"first_name": "A", "last_name": "A", "email": "a@x.io"})
        second = contacts.create({"first_name": "B", "last_name": "B", "email": "b@x.io"})
        ids = [c.id for c in contacts.list(ContactFilters(sort_by="bogus", sort_order="asc"))]
        assert ids == [second.id, first.id]

    def test_empty_update_changes_only_updated_at(self, contacts):
        created = contacts.create({
            "first_name": "Ada", "last_name": "L", "email": "a@x.io", "company": "Acme", "tags": ["vip"],
        })
        updated = contacts.update(created.id, {})
        before, after = created.to_dict(), updated.to_dict()
        before.pop("updated_at")
        after.pop("updated_at")
        assert before == after
        assert updated.updated_at >= created.updated_at

    def test_update_clears_field_with_blank(self, contacts):
        created = contacts.create({"first_name": "Ada", "last_name": "L", "email": "a@x.io", "company": "Acme"})
        updated = contacts.update(created.id, {"company": "  "})
        assert updated.company is None
        assert updated.first_name == "Ada"

    def test_update_missing_raises_not_found(self, contacts):
        with pytest.raises(NotFound):
            contacts.update("missing-id", {"company": "Acme"})

    def test_update_rejects_unknown_fields(self, contacts):
        with pytest.raises(ValueError, match="user_id"):
            contacts.update("any", {"user_id": "someone-else"})

    def test_delete(self, contacts):
        created = contacts.create({"first_name": "Ada", "last_name": "L", "email": "a@x.io"})
        contacts.delete(created.id)
        assert contacts.list() == []


class TestTaskGateway:

    def test_create_defaults(self, tasks):
        task = tasks.create(NewTask(title=" Call Ada ", description=" "))
        assert task.title == "Call Ada"
        assert task.description is None
        assert task.status == TaskStatus.TODO
        assert task.priority == TaskPriority.MEDIUM
        assert task.completed_at is None

    def test_blank_references_become_none(self, tasks):
        task = tasks.create({"title": "x", "contact_id": "", "assigned_to": ""})
        assert task.contact_id is None
        assert task.assigned_to is None

    def test_status_filter_returns_only_that_status(self, tasks):
        tasks.create({"title": "a", "status": "todo"})
        tasks.create({"title": "b", "status": "done"})
        tasks.create({"title": "c", "status": "in_progress"})
        found = tasks.list(TaskFilters(status="done"))
        assert [t.title for t in found] == ["b"]
        assert all(t.status == TaskStatus.DONE for t in found)

    def test_due_date_range(self, tasks):
        tasks.create({"title": "jan", "due_date": "2025-01-15T00:00:00Z"})
        tasks.create({"title": "feb", "due_date": "2025-02-15T00:00:00Z"})
        tasks.create({"title": "none"})
        found = tasks.list(TaskFilters(due_date_from="2025-01-01T00:00:00Z", due_date_to="2025-01-31T00:00:00Z"))
        assert [t.title for t in found] == ["jan"]

    def test_sort_by_due_date_puts_missing_last(self, tasks):
        tasks.create({"title": "none"})
        tasks.create({"title": "late", "due_date": "2025-05-01T00:00:00Z"})
        tasks.create({"title": "soon", "due_date": "2025-01-01T00:00:00Z"})
        asc = [t.title for t in tasks.list(TaskFilters(sort_by="due_date", sort_order="asc"))]
        desc = [t.title for t in tasks.list(TaskFilters(sort_by="due_date", sort_order="desc"))]
        assert asc == ["soon", "late", "none"]
        assert desc == ["late", "soon", "none"]

    def test_sort_by_priority_uses_rank(self, tasks):
        for priority in ("urgent", "low", "high", "medium"):
            tasks.create({"title": priority, "priority": priority})
        found = tasks.list(TaskFilters(sort_by="priority", sort_order="desc"))
        assert [t.priority.value for t in found] == ["urgent", "high", "medium", "low"]

    def test_done_stamps_completed_at(self, tasks):
        task = tasks.create({"title": "x"})
        done = tasks.update(task.id, {"status": TaskStatus.DONE})
        assert done.completed_at is not None
        reopened = tasks.update(task.id, {"status": "todo"})
        assert reopened.completed_at is None

    def test_resaving_done_task_keeps_completion_time(self, tasks):
        task = tasks.create({"title": "x"})
        done = tasks.update(task.id, {"status": "done"})
        edited = tasks.update(task.id, {"title": "x edited", "status": "done"})
        assert edited.title == "x edited"
        assert edited.completed_at == done.completed_at

    def test_update_without_status_keeps_completed_at(self, tasks):
        task = tasks.create({"title": "x", "status": "done"})
        renamed = tasks.update(task.id, {"title": "y"})
        assert renamed.completed_at == task.completed_at


class TestStoreFailures:

    def test_list_failure_wraps_store_message(self):
        gateway = ContactGateway(BrokenBackend())
        with pytest.raises(RemoteOperationFailed, match="Failed to fetch contacts: connection refused"):
            gateway.list()

    def test_get_failure(self):
        with pytest.raises(RemoteOperationFailed, match="Failed to fetch task: connection refused"):
            TaskGateway(BrokenBackend()).get("t1")

    def test_create_failure(self):
        gateway = ContactGateway(BrokenBackend())
        with pytest.raises(RemoteOperationFailed, match="Failed to create contact: duplicate key value"):
            gateway.create({"first_name": "A", "last_name": "B", "email": "a@x.io"})
