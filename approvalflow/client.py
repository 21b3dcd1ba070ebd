"""
ApprovalFlow - HTTP client for the approval and assignment API.

Error responses are turned back into the same exceptions the engine raises,
so callers handle ``DuplicatePendingItemError`` and friends identically
whether they embed the engine or talk to a server.
"""

from datetime import datetime
from typing import Any, Iterable, Optional

import httpx

from .exceptions import error_from_payload
from .models import (
    Assignment,
    AutoAssignmentSettings,
    ExpertReview,
    Notification,
    Priority,
    ReviewableItem,
    Reviewer,
    TransitionEvent,
    ValidationResult,
    _parse_datetime,
)


class ApprovalFlowClient:
    """
    Synchronous client for the ApprovalFlow server.

    Example:
        ```python
        client = ApprovalFlowClient(
            base_url="http://localhost:8000",
            api_key="dev-admin-key",
            user_id="alice",
        )

        item_id = client.submit_item("risk_assessment", "sys-42", "Annual risk review")
        item = client.auto_assign(item_id)

        # Optimistic concurrency: pass the version you last saw
        client.update_status(item_id, "in_progress", expected_version=item.version)
        ```
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        headers = {
            "X-API-Key": api_key,
            "Content-Type": "application/json",
        }
        if user_id:
            headers["X-User-ID"] = user_id
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def _handle_response(self, response: httpx.Response) -> Any:
        """Return the JSON body or raise the matching ApprovalFlow error."""
        if response.status_code >= 400:
            try:
                data = response.json() if response.content else {}
            except ValueError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            if "message" not in data and "detail" in data:
                data["message"] = str(data["detail"])
            raise error_from_payload(response.status_code, data)

        return response.json() if response.content else {}

    @staticmethod
    def _if_match(expected_version: Optional[int]) -> dict:
        return {"If-Match": str(expected_version)} if expected_version is not None else {}

    # ==================== Discovery ====================

    def discover(self) -> dict:
        response = self._client.get("/.well-known/approvalflow.json")
        return self._handle_response(response)

    # ==================== Items ====================

    def submit_item(
        self,
        module_type: str,
        module_id: str,
        title: str,
        description: str = "",
        priority: Optional[str] = None,
        due_date: Optional[datetime] = None,
        submitted_by: Optional[str] = None,
    ) -> str:
        """Submit an artifact for approval and return the new item id."""
        body: dict[str, Any] = {
            "module_type": module_type,
            "module_id": module_id,
            "title": title,
            "description": description,
        }
        if priority is not None:
            body["priority"] = priority.value if isinstance(priority, Priority) else priority
        if due_date is not None:
            body["due_date"] = due_date.isoformat()
        if submitted_by is not None:
            body["submitted_by"] = submitted_by
        response = self._client.post("/api/v1/items", json=body)
        return self._handle_response(response)["item_id"]

    def check_exists(self, module_type: str, module_id: str) -> bool:
        response = self._client.get(
            "/api/v1/items/exists",
            params={"moduleType": module_type, "moduleId": module_id},
        )
        return self._handle_response(response)["exists"]

    def get_item(self, item_id: str) -> ReviewableItem:
        response = self._client.get(f"/api/v1/items/{item_id}")
        return ReviewableItem.from_dict(self._handle_response(response))

    def list_items(
        self,
        status: Optional[Iterable[str]] = None,
        module_type: Optional[str] = None,
        assignee: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReviewableItem]:
        params: list[tuple[str, Any]] = [("limit", limit), ("offset", offset)]
        params += [("status", s) for s in status or []]
        if module_type:
            params.append(("moduleType", module_type))
        if assignee:
            params.append(("assignee", assignee))
        response = self._client.get("/api/v1/items", params=params)
        return [ReviewableItem.from_dict(d) for d in self._handle_response(response)]

    def get_assignments(self, item_id: str) -> list[Assignment]:
        response = self._client.get(f"/api/v1/items/{item_id}/assignments")
        return [
            Assignment(
                id=d["id"],
                item_id=d["item_id"],
                assigned_to=d["assigned_to"],
                strategy_used=d["strategy_used"],
                assigned_at=_parse_datetime(d["assigned_at"]),
                note=d.get("note", ""),
                assigned_by=d.get("assigned_by"),
            )
            for d in self._handle_response(response)
        ]

    def get_events(self, item_id: str) -> list[TransitionEvent]:
        response = self._client.get(f"/api/v1/items/{item_id}/events")
        return [TransitionEvent.from_dict(d) for d in self._handle_response(response)]

    def assign_manually(
        self,
        item_id: str,
        reviewer_ids: list[str],
        note: str = "",
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        response = self._client.post(
            f"/api/v1/items/{item_id}/assign",
            json={"reviewer_ids": reviewer_ids, "note": note},
            headers=self._if_match(expected_version),
        )
        return ReviewableItem.from_dict(self._handle_response(response))

    def auto_assign(
        self,
        item_id: str,
        force_assign: bool = False,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        response = self._client.post(
            f"/api/v1/items/{item_id}/auto-assign",
            json={"force_assign": force_assign},
            headers=self._if_match(expected_version),
        )
        return ReviewableItem.from_dict(self._handle_response(response))

    def update_status(
        self,
        item_id: str,
        new_status: str,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        body: dict[str, Any] = {"new_status": new_status}
        if feedback is not None:
            body["feedback"] = feedback
        response = self._client.patch(
            f"/api/v1/items/{item_id}/status",
            json=body,
            headers=self._if_match(expected_version),
        )
        return ReviewableItem.from_dict(self._handle_response(response))

    # ==================== Settings ====================

    def get_settings(self) -> AutoAssignmentSettings:
        response = self._client.get("/api/v1/settings/auto-assignment")
        return AutoAssignmentSettings.from_dict(self._handle_response(response))

    def update_settings(
        self,
        enabled: bool,
        strategy_type: str,
        eligible_roles: Iterable[str],
        eligible_departments: Iterable[str],
        expected_version: Optional[int] = None,
    ) -> AutoAssignmentSettings:
        response = self._client.put(
            "/api/v1/settings/auto-assignment",
            json={
                "enabled": enabled,
                "strategy_type": strategy_type,
                "eligible_roles": sorted(eligible_roles),
                "eligible_departments": sorted(eligible_departments),
            },
            headers=self._if_match(expected_version),
        )
        return AutoAssignmentSettings.from_dict(self._handle_response(response))

    # ==================== Reviewers & notifications ====================

    def list_reviewers(
        self, roles: Iterable[str] = (), departments: Iterable[str] = ()
    ) -> list[Reviewer]:
        params = [("role", r) for r in roles] + [("department", d) for d in departments]
        response = self._client.get("/api/v1/reviewers", params=params)
        return [Reviewer.from_dict(d) for d in self._handle_response(response)]

    def add_reviewer(
        self, reviewer_id: str, display_name: str, role: str, department: Optional[str] = None
    ) -> Reviewer:
        response = self._client.post(
            "/api/v1/reviewers",
            json={
                "id": reviewer_id,
                "display_name": display_name,
                "role": role,
                "department": department,
            },
        )
        return Reviewer.from_dict(self._handle_response(response))

    def list_notifications(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        response = self._client.get(
            f"/api/v1/users/{user_id}/notifications",
            params={"unreadOnly": str(unread_only).lower()},
        )
        return [
            Notification(
                id=d["id"],
                user_id=d["user_id"],
                item_id=d["item_id"],
                title=d["title"],
                message=d["message"],
                type=d["type"],
                priority=Priority(d.get("priority", "medium")),
                is_read=d.get("is_read", False),
                created_at=_parse_datetime(d.get("created_at")),
            )
            for d in self._handle_response(response)
        ]

    def unread_count(self, user_id: str) -> int:
        response = self._client.get(f"/api/v1/users/{user_id}/notifications/unread-count")
        return self._handle_response(response)["count"]

    def mark_read(self, user_id: str, notification_ids: Optional[list[str]] = None) -> int:
        response = self._client.post(
            f"/api/v1/users/{user_id}/notifications/read",
            json={"notification_ids": notification_ids},
        )
        return self._handle_response(response)["updated"]

    # ==================== Legal validation ====================

    def analyze(self, text: str, context: Optional[dict] = None) -> ValidationResult:
        response = self._client.post(
            "/api/v1/validation/analyze", json={"text": text, "context": context or {}}
        )
        return ValidationResult.from_dict(self._handle_response(response))

    def request_expert_review(
        self, text: str, review_type: str = "general", title: Optional[str] = None
    ) -> ExpertReview:
        body: dict[str, Any] = {"text": text, "type": review_type}
        if title:
            body["title"] = title
        response = self._client.post("/api/v1/expert-reviews", json=body)
        return ReviewableItem.from_dict(self._handle_response(response))

    def update_expert_review(
        self,
        review_id: str,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        expert_feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ExpertReview:
        body = {
            k: v
            for k, v in {
                "status": status,
                "assigned_to": assigned_to,
                "expert_feedback": expert_feedback,
            }.items()
            if v is not None
        }
        response = self._client.patch(
            f"/api/v1/expert-reviews/{review_id}",
            json=body,
            headers=self._if_match(expected_version),
        )
        return ReviewableItem.from_dict(self._handle_response(response))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ApprovalFlowClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
