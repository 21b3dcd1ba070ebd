"""
User Directory adapters.

A directory answers "who may review" with ``open_assignment_count`` already
filled in, so strategies never touch the store.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import httpx
import yaml

from .database import Database, ReviewerModel
from .exceptions import ValidationError
from .models import Reviewer, RetryPolicy
from .retry import call_with_retry

logger = logging.getLogger("approvalflow.directory")

WorkloadFn = Callable[[Iterable[str]], dict[str, int]]


def _matches(reviewer: Reviewer, roles: Iterable[str], departments: Iterable[str]) -> bool:
    roles = set(roles or [])
    departments = set(departments or [])
    if roles and reviewer.role not in roles:
        return False
    if departments and reviewer.department not in departments:
        return False
    return True


def _with_workload(reviewers: list[Reviewer], workload: Optional[WorkloadFn]) -> list[Reviewer]:
    if workload is None or not reviewers:
        return reviewers
    counts = workload([r.id for r in reviewers])
    return [
        Reviewer(
            id=r.id,
            display_name=r.display_name,
            role=r.role,
            department=r.department,
            open_assignment_count=counts.get(r.id, 0),
        )
        for r in reviewers
    ]


class UserDirectory(ABC):
    """Read-only source of reviewers."""

    @abstractmethod
    def list_eligible(
        self, roles: Iterable[str], departments: Iterable[str]
    ) -> list[Reviewer]:
        """Reviewers whose role and department are in the given sets (empty set = any)."""

    @abstractmethod
    def get_reviewer(self, reviewer_id: str) -> Optional[Reviewer]:
        ...

    def unknown_ids(self, reviewer_ids: Iterable[str]) -> list[str]:
        return [rid for rid in reviewer_ids if self.get_reviewer(rid) is None]


class InMemoryUserDirectory(UserDirectory):
    def __init__(
        self,
        reviewers: Iterable[Union[Reviewer, dict]] = (),
        workload: Optional[WorkloadFn] = None,
    ):
        self._reviewers = {}
        for reviewer in reviewers:
            if isinstance(reviewer, dict):
                reviewer = Reviewer.from_dict(reviewer)
            self._reviewers[reviewer.id] = reviewer
        self.workload = workload

    def add(self, reviewer: Reviewer) -> None:
        self._reviewers[reviewer.id] = reviewer

    def list_eligible(self, roles, departments):
        matching = [
            r
            for _, r in sorted(self._reviewers.items())
            if _matches(r, roles, departments)
        ]
        return _with_workload(matching, self.workload)

    def get_reviewer(self, reviewer_id):
        return self._reviewers.get(reviewer_id)


class DatabaseUserDirectory(UserDirectory):
    """Reviewers kept in the ``reviewers`` table; workload from the item store."""

    def __init__(self, db: Database, workload: Optional[WorkloadFn] = None):
        self.db = db
        self.workload = workload

    @staticmethod
    def _to_reviewer(row: ReviewerModel) -> Reviewer:
        return Reviewer(
            id=row.id,
            display_name=row.display_name,
            role=row.role,
            department=row.department,
        )

    def list_eligible(self, roles, departments):
        with self.db.transaction() as session:
            rows = self.db.list_reviewers(session, roles=roles, departments=departments)
            reviewers = [self._to_reviewer(r) for r in rows]
        return _with_workload(reviewers, self.workload)

    def get_reviewer(self, reviewer_id):
        with self.db.transaction() as session:
            row = self.db.get_reviewer(session, reviewer_id)
            return self._to_reviewer(row) if row else None

    def upsert(self, reviewer: Reviewer, active: bool = True) -> None:
        with self.db.transaction() as session:
            self.db.upsert_reviewer(
                session,
                id=reviewer.id,
                display_name=reviewer.display_name,
                role=reviewer.role,
                department=reviewer.department,
                active=active,
            )

    def load(self, reviewers: Iterable[Reviewer]) -> int:
        count = 0
        for reviewer in reviewers:
            self.upsert(reviewer)
            count += 1
        logger.info("Loaded %d reviewers into the directory", count)
        return count


class HttpUserDirectory(UserDirectory):
    """
    Directory served by an external user service.

    Expects ``GET /reviewers?role=..&department=..`` returning a list of
    reviewer objects, and ``GET /reviewers/{id}`` returning one or 404.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        workload: Optional[WorkloadFn] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.workload = workload

    def _get(self, path: str, params=None) -> Optional[httpx.Response]:
        def attempt():
            response = self._client.get(path, params=params)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response

        return call_with_retry(
            attempt,
            policy=self.retry_policy,
            retry_on=(httpx.HTTPError,),
            description=f"directory GET {path}",
        )

    def list_eligible(self, roles, departments):
        params = [("role", r) for r in sorted(roles or [])]
        params += [("department", d) for d in sorted(departments or [])]
        response = self._get("/reviewers", params=params)
        data = response.json() if response is not None else []
        reviewers = [Reviewer.from_dict(d) for d in data]
        # Filter locally too, in case the service ignores the query.
        reviewers = sorted(
            (r for r in reviewers if _matches(r, roles, departments)), key=lambda r: r.id
        )
        return _with_workload(reviewers, self.workload)

    def get_reviewer(self, reviewer_id):
        response = self._get(f"/reviewers/{reviewer_id}")
        if response is None:
            return None
        return Reviewer.from_dict(response.json())

    def close(self) -> None:
        self._client.close()


def load_reviewers_yaml(path: Union[str, Path]) -> list[Reviewer]:
    """
    Read reviewer seed data from YAML.

    The file holds either a list of reviewers or a mapping with a
    ``reviewers`` key.
    """
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"Reviewers file not found: {path}", field="reviewers_file")
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("reviewers", [])
    if not isinstance(data, list):
        raise ValidationError("Reviewers file must contain a list", field="reviewers_file")
    reviewers = []
    for entry in data:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValidationError("Each reviewer needs an id", field="reviewers_file")
        reviewers.append(Reviewer.from_dict(entry))
    return reviewers
