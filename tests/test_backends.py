"""
Tests for table store backends: SQLite store, PostgREST client, row sorting.
"""
from unittest import mock

import pytest
import requests

from crmboard.backends import (
    Order,
    RestTableBackend,
    SqliteTableBackend,
    TableQuery,
    sort_rows,
)
from crmboard.errors import StoreError
from crmboard.schema import PRIORITY_RANK


def _contact(**overrides):
    values = {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"}
    values.update(overrides)
    return values


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# SQLite backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSqliteBackend:

    def test_insert_stamps_identity_and_timestamps(self, backend):
        row = backend.insert("contacts", _contact(tags=["vip"]))
        assert row["id"]
        assert row["user_id"] == "user-1"
        assert row["created_at"] == row["updated_at"]
        assert row["tags"] == ["vip"]

    def test_rows_are_scoped_to_user(self, backend, tmp_path):
        backend.insert("contacts", _contact())
        other = SqliteTableBackend(backend.db_path, user_id="user-2")
        assert other.select("contacts", TableQuery()) == []
        assert len(backend.select("contacts", TableQuery())) == 1

    def test_search_is_case_insensitive_across_columns(self, backend):
        backend.insert("contacts", _contact(company="Acme Corp"))
        backend.insert("contacts", _contact(first_name="Bob", last_name="Smith", email="bob@x.io"))
        query = TableQuery().ilike_any(("first_name", "last_name", "email", "company"), "ACME")
        rows = backend.select("contacts", query)
        assert [r["company"] for r in rows] == ["Acme Corp"]

    @pytest.mark.parametrize("term", ["ørsted", "ÉCOLE", "école ø", "STRASSE"])
    def test_search_folds_non_ascii_case(self, backend, term):
        backend.insert("contacts", _contact(company="École Ørsted Straße"))
        backend.insert("contacts", _contact(company="Acme Corp"))
        query = TableQuery().ilike_any(("company",), term)
        rows = backend.select("contacts", query)
        assert [r["company"] for r in rows] == ["École Ørsted Straße"]

    def test_search_treats_wildcards_literally(self, backend):
        backend.insert("tasks", {"title": "100% done"})
        backend.insert("tasks", {"title": "1000 things"})
        rows = backend.select("tasks", TableQuery().ilike_any(("title",), "0%"))
        assert [r["title"] for r in rows] == ["100% done"]

    def test_equality_and_range_conditions(self, backend):
        backend.insert("tasks", {"title": "a", "status": "todo", "due_date": "2025-01-10T00:00:00+00:00"})
        backend.insert("tasks", {"title": "b", "status": "done", "due_date": "2025-01-20T00:00:00+00:00"})
        backend.insert("tasks", {"title": "c", "status": "todo", "due_date": "2025-02-20T00:00:00+00:00"})
        query = (
            TableQuery()
            .eq("status", "todo")
            .gte("due_date", "2025-01-01T00:00:00+00:00")
            .lte("due_date", "2025-01-31T00:00:00+00:00")
        )
        assert [r["title"] for r in backend.select("tasks", query)] == ["a"]

    def test_nulls_last_ordering(self, backend):
        backend.insert("contacts", _contact(company=None))
        backend.insert("contacts", _contact(company="Zeta"))
        backend.insert("contacts", _contact(company="Acme"))
        for ascending, expected in ((True, ["Acme", "Zeta", None]), (False, ["Zeta", "Acme", None])):
            query = TableQuery().order("company", ascending, nulls_last=True)
            assert [r["company"] for r in backend.select("contacts", query)] == expected

    def test_ranked_ordering(self, backend):
        for priority in ("high", "low", "urgent", "medium"):
            backend.insert("tasks", {"title": priority, "priority": priority})
        query = TableQuery().order("priority", True, rank=PRIORITY_RANK)
        assert [r["priority"] for r in backend.select("tasks", query)] == ["low", "medium", "high", "urgent"]

    def test_ties_resolve_newest_first(self, backend):
        backend.insert("tasks", {"title": "same"})
        second = backend.insert("tasks", {"title": "same"})
        rows = backend.select("tasks", TableQuery().order("title"))
        assert rows[0]["id"] == second["id"]

    def test_update_missing_row_returns_none(self, backend):
        assert backend.update("tasks", "nope", {"title": "x"}) is None

    def test_update_changes_updated_at(self, backend):
        row = backend.insert("tasks", {"title": "a"})
        updated = backend.update("tasks", row["id"], {"title": "b"})
        assert updated["title"] == "b"
        assert updated["created_at"] == row["created_at"]

    def test_delete(self, backend):
        row = backend.insert("tasks", {"title": "a"})
        backend.delete("tasks", row["id"])
        assert backend.select_one("tasks", row["id"]) is None

    def test_unknown_column_raises(self, backend):
        with pytest.raises(StoreError, match="nickname"):
            backend.insert("contacts", _contact(nickname="Addie"))

    def test_unknown_table_raises(self, backend):
        with pytest.raises(StoreError, match="does not exist"):
            backend.select("deals", TableQuery())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Python-side sorting
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSortRows:

    ROWS = [{"k": 2}, {"k": None}, {"k": 1}]

    def test_ascending_puts_nulls_last(self):
        assert [r["k"] for r in sort_rows(self.ROWS, [Order("k")])] == [1, 2, None]

    def test_descending_puts_nulls_first(self):
        assert [r["k"] for r in sort_rows(self.ROWS, [Order("k", ascending=False)])] == [None, 2, 1]

    def test_descending_nulls_last(self):
        rows = sort_rows(self.ROWS, [Order("k", ascending=False, nulls_last=True)])
        assert [r["k"] for r in rows] == [2, 1, None]

    def test_rank_descending(self):
        rows = [{"p": "low"}, {"p": "urgent"}, {"p": "medium"}]
        ordered = sort_rows(rows, [Order("p", ascending=False, rank=tuple(PRIORITY_RANK))])
        assert [r["p"] for r in ordered] == ["urgent", "medium", "low"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PostgREST backend
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _response(ok=True, payload=None, status=200):
    resp = mock.Mock()
    resp.ok = ok
    resp.status_code = status
    resp.content = b"x" if payload is not None else b""
    resp.text = str(payload)
    resp.json.return_value = payload
    return resp


@pytest.fixture
def rest():
    return RestTableBackend("https://db.example.co/", "anon-key", access_token="jwt", user_id="user-1")


class TestRestBackend:

    def test_build_params(self, rest):
        query = (
            TableQuery()
            .ilike_any(("title", "description"), "call")
            .eq("status", "todo")
            .order("due_date", True, nulls_last=True)
        )
        params = rest.build_params(query)
        assert ("select", "*") in params
        assert ("or", "(title.ilike.*call*,description.ilike.*call*)") in params
        assert ("status", "eq.todo") in params
        assert ("order", "due_date.asc.nullslast") in params

    def test_search_term_with_spaces_is_quoted(self, rest):
        params = dict(rest.build_params(TableQuery().ilike_any(("title",), "follow up")))
        assert params["or"] == '(title.ilike."*follow up*")'

    def test_ranked_order_is_not_sent(self, rest):
        params = dict(rest.build_params(TableQuery().order("priority", rank=PRIORITY_RANK)))
        assert "order" not in params

    def test_select_sends_auth_headers(self, rest):
        with mock.patch.object(rest.session, "request", return_value=_response(payload=[])) as req:
            assert rest.select("tasks", TableQuery()) == []
        args, kwargs = req.call_args
        assert args == ("GET", "https://db.example.co/rest/v1/tasks")
        assert kwargs["headers"]["apikey"] == "anon-key"
        assert kwargs["headers"]["Authorization"] == "Bearer jwt"

    def test_select_sorts_ranked_results(self, rest):
        rows = [{"priority": "high"}, {"priority": "low"}]
        with mock.patch.object(rest.session, "request", return_value=_response(payload=rows)):
            result = rest.select("tasks", TableQuery().order("priority", rank=PRIORITY_RANK))
        assert [r["priority"] for r in result] == ["low", "high"]

    def test_insert_stamps_user(self, rest):
        with mock.patch.object(rest.session, "request", return_value=_response(payload=[{"id": "t1"}])) as req:
            assert rest.insert("tasks", {"title": "a"}) == {"id": "t1"}
        assert req.call_args.kwargs["json"] == {"title": "a", "user_id": "user-1"}

    def test_update_missing_row_returns_none(self, rest):
        with mock.patch.object(rest.session, "request", return_value=_response(payload=[])):
            assert rest.update("tasks", "t1", {"title": "b"}) is None

    def test_error_message_from_store(self, rest):
        resp = _response(ok=False, payload={"message": "permission denied for table tasks"}, status=403)
        with mock.patch.object(rest.session, "request", return_value=resp):
            with pytest.raises(StoreError, match="permission denied"):
                rest.select("tasks", TableQuery())

    def test_network_error(self, rest):
        with mock.patch.object(rest.session, "request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(StoreError, match="refused"):
                rest.select_one("tasks", "t1")
