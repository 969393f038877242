"""
Tests for schema: enums, row parsing, overdue rule.
"""
from datetime import datetime, timedelta, timezone

from crmboard.schema import (
    Contact,
    FileAttachment,
    NewTask,
    Task,
    TaskPriority,
    TaskStatus,
    parse_dt,
    to_iso,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums and timestamps
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestEnums:

    def test_status_from_str(self):
        assert TaskStatus.from_str("in_progress") == TaskStatus.IN_PROGRESS

    def test_status_unknown_falls_back_to_todo(self):
        assert TaskStatus.from_str("blocked") == TaskStatus.TODO
        assert TaskStatus.from_str(None) == TaskStatus.TODO

    def test_priority_unknown_falls_back_to_medium(self):
        assert TaskPriority.from_str("critical") == TaskPriority.MEDIUM
        assert TaskPriority.from_str("urgent") == TaskPriority.URGENT


class TestTimestamps:

    def test_parse_z_suffix(self):
        dt = parse_dt("2025-03-05T10:00:00Z")
        assert dt == datetime(2025, 3, 5, 10, tzinfo=timezone.utc)

    def test_naive_is_treated_as_utc(self):
        assert parse_dt("2025-03-05T10:00:00").tzinfo == timezone.utc

    def test_blank_is_none(self):
        assert parse_dt("") is None
        assert to_iso(None) is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Rows
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestContact:

    def test_from_sqlite_row_decodes_json_columns(self):
        contact = Contact.from_dict({
            "id": "c1",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "tags": '["vip", "math"]',
            "attachments": '[{"name": "a.pdf", "url": "http://x/a.pdf", "size": 12}]',
            "created_at": "2025-01-01T00:00:00+00:00",
        })
        assert contact.tags == ["vip", "math"]
        assert contact.attachments[0].name == "a.pdf"
        assert contact.attachments[0].size == 12
        assert contact.full_name == "Ada Lovelace"
        assert contact.phone is None

    def test_to_dict_keeps_absent_fields_as_none(self):
        contact = Contact(id="c1", first_name="Ada", last_name="L", email="a@b.co")
        data = contact.to_dict()
        assert data["company"] is None
        assert data["attachments"] is None
        assert data["tags"] is None

    def test_attachment_to_dict(self):
        att = FileAttachment(name="a.txt", url="http://x/a.txt", size=3, type="text/plain")
        data = att.to_dict()
        assert data["type"] == "text/plain"
        assert parse_dt(data["uploaded_at"]) == att.uploaded_at


class TestTask:

    def test_from_dict_parses_enums_and_dates(self):
        task = Task.from_dict({
            "id": "t1",
            "title": "Call",
            "status": "done",
            "priority": "high",
            "due_date": "2025-03-05T00:00:00Z",
        })
        assert task.status == TaskStatus.DONE
        assert task.priority == TaskPriority.HIGH
        assert task.due_date.year == 2025

    def test_overdue_when_past_due_and_open(self):
        now = datetime(2025, 3, 10, tzinfo=timezone.utc)
        task = Task(id="t1", title="x", due_date=now - timedelta(days=1))
        assert task.is_overdue(now)

    def test_done_task_is_never_overdue(self):
        now = datetime(2025, 3, 10, tzinfo=timezone.utc)
        task = Task(id="t1", title="x", status=TaskStatus.DONE, due_date=now - timedelta(days=30))
        assert not task.is_overdue(now)

    def test_no_due_date_is_not_overdue(self):
        assert not Task(id="t1", title="x").is_overdue()

    def test_new_task_to_dict_lists_every_field(self):
        data = NewTask(title="Call").to_dict()
        assert data["title"] == "Call"
        assert set(data) >= {"description", "status", "priority", "due_date", "contact_id"}
