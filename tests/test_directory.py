"""
Tests for user directory adapters.
"""

import httpx
import pytest

from approvalflow.directory import (
    DatabaseUserDirectory,
    HttpUserDirectory,
    InMemoryUserDirectory,
    load_reviewers_yaml,
)
from approvalflow.exceptions import UnavailableError, ValidationError
from approvalflow.models import ModuleType, ReviewableItem, Reviewer, RetryPolicy, RetryStrategy
from approvalflow.store import new_item_id

NO_WAIT = RetryPolicy(strategy=RetryStrategy.NONE, max_retries=2)

ROLES = {"admin", "decision_maker"}
DEPARTMENTS = {"Legal & Compliance", "IT"}


class TestInMemoryDirectory:
    def test_list_eligible_filters_and_sorts(self, reviewers):
        directory = InMemoryUserDirectory(reversed(reviewers))
        eligible = directory.list_eligible(ROLES, DEPARTMENTS)
        assert [r.id for r in eligible] == ["u1", "u2", "u3"]

    def test_empty_filters_match_everyone(self, reviewers):
        directory = InMemoryUserDirectory(reviewers)
        assert len(directory.list_eligible(set(), set())) == 4

    def test_workload_is_attached(self, reviewers):
        directory = InMemoryUserDirectory(
            reviewers, workload=lambda ids: {"u2": 3}
        )
        counts = {r.id: r.open_assignment_count for r in directory.list_eligible(ROLES, DEPARTMENTS)}
        assert counts == {"u1": 0, "u2": 3, "u3": 0}

    def test_unknown_ids(self, reviewers):
        directory = InMemoryUserDirectory([{"id": "x1", "role": "admin"}])
        directory.add(reviewers[0])
        assert directory.unknown_ids(["x1", "u1", "nobody"]) == ["nobody"]


class TestDatabaseDirectory:
    def test_load_and_query(self, db, reviewers):
        directory = DatabaseUserDirectory(db)
        assert directory.load(reviewers) == 4

        assert [r.id for r in directory.list_eligible(ROLES, DEPARTMENTS)] == ["u1", "u2", "u3"]
        assert directory.get_reviewer("u9").department == "R&D"
        assert directory.get_reviewer("ghost") is None

    def test_inactive_reviewers_are_hidden(self, db, reviewers):
        directory = DatabaseUserDirectory(db)
        directory.load(reviewers)
        directory.upsert(reviewers[0], active=False)

        assert directory.get_reviewer("u1") is None
        assert "u1" not in [r.id for r in directory.list_eligible(ROLES, DEPARTMENTS)]

    def test_workload_from_store(self, db, store, reviewers):
        item_id = store.create(
            ReviewableItem(
                id=new_item_id(), module_type=ModuleType.DOCUMENT, module_id="d", title="Doc"
            )
        )
        store.set_assignees(item_id, ["u3"], "manual")

        directory = DatabaseUserDirectory(db, workload=store.open_assignment_counts)
        directory.load(reviewers)
        counts = {r.id: r.open_assignment_count for r in directory.list_eligible(ROLES, DEPARTMENTS)}
        assert counts["u3"] == 1


class TestHttpDirectory:
    def _directory(self, handler):
        return HttpUserDirectory(
            "https://users.example.com",
            api_key="secret",
            retry_policy=NO_WAIT,
            transport=httpx.MockTransport(handler),
        )

    def test_list_eligible(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200,
                json=[
                    {"id": "b", "display_name": "B", "role": "admin", "department": "IT"},
                    {"id": "a", "display_name": "A", "role": "admin", "department": "IT"},
                    {"id": "c", "display_name": "C", "role": "intern", "department": "IT"},
                ],
            )

        directory = self._directory(handler)
        assert [r.id for r in directory.list_eligible({"admin"}, {"IT"})] == ["a", "b"]
        assert seen[0].headers["X-API-Key"] == "secret"
        assert seen[0].url.params.get_list("role") == ["admin"]

    def test_get_reviewer_404(self):
        def handler(request):
            if request.url.path == "/reviewers/known":
                return httpx.Response(200, json={"id": "known", "role": "admin"})
            return httpx.Response(404)

        directory = self._directory(handler)
        assert directory.get_reviewer("known").role == "admin"
        assert directory.get_reviewer("missing") is None

    def test_outage_raises_unavailable(self):
        directory = self._directory(lambda request: httpx.Response(502))
        with pytest.raises(UnavailableError):
            directory.get_reviewer("u1")


class TestLoadReviewersYaml:
    def test_mapping_form(self, tmp_path):
        path = tmp_path / "reviewers.yaml"
        path.write_text(
            "reviewers:\n"
            "  - id: u1\n"
            "    display_name: Ana\n"
            "    role: admin\n"
            "    department: Legal & Compliance\n"
        )
        [reviewer] = load_reviewers_yaml(path)
        assert reviewer == Reviewer(
            id="u1", display_name="Ana", role="admin", department="Legal & Compliance"
        )

    def test_list_form(self, tmp_path):
        path = tmp_path / "reviewers.yaml"
        path.write_text("- id: u1\n  role: admin\n- id: u2\n  role: decision_maker\n")
        assert [r.id for r in load_reviewers_yaml(path)] == ["u1", "u2"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError) as exc:
            load_reviewers_yaml(tmp_path / "nope.yaml")
        assert exc.value.field == "reviewers_file"

    def test_entry_without_id(self, tmp_path):
        path = tmp_path / "reviewers.yaml"
        path.write_text("- role: admin\n")
        with pytest.raises(ValidationError):
            load_reviewers_yaml(path)
