"""
Review state machine.

Generic approval items move pending -> assigned -> in_progress -> completed,
may complete straight from assigned, and may be rejected from assigned or
in_progress. Expert legal reviews use pending -> in_progress -> completed.

The transition out of ``pending`` is owned by assignment: it is only taken
through ``set_assignees`` so that an item never becomes assigned to nobody.
"""

from dataclasses import dataclass
from typing import Mapping

from .exceptions import InvalidTransitionError
from .models import ItemStatus, ModuleType

GENERIC_TRANSITIONS: Mapping[ItemStatus, frozenset] = {
    ItemStatus.PENDING: frozenset({ItemStatus.ASSIGNED}),
    ItemStatus.ASSIGNED: frozenset(
        {ItemStatus.IN_PROGRESS, ItemStatus.COMPLETED, ItemStatus.REJECTED}
    ),
    ItemStatus.IN_PROGRESS: frozenset({ItemStatus.COMPLETED, ItemStatus.REJECTED}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.REJECTED: frozenset(),
}

EXPERT_REVIEW_TRANSITIONS: Mapping[ItemStatus, frozenset] = {
    ItemStatus.PENDING: frozenset({ItemStatus.IN_PROGRESS}),
    ItemStatus.IN_PROGRESS: frozenset({ItemStatus.COMPLETED}),
    ItemStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class StateMachine:
    name: str
    transitions: Mapping[ItemStatus, frozenset]
    assigned_status: ItemStatus

    @property
    def statuses(self) -> frozenset:
        return frozenset(self.transitions)

    def allowed_from(self, status: ItemStatus) -> frozenset:
        return self.transitions.get(status, frozenset())

    def can_transition(self, current: ItemStatus, new: ItemStatus) -> bool:
        return new in self.allowed_from(current)

    def validate_transition(self, current: ItemStatus, new: ItemStatus) -> None:
        """Check a reviewer-driven status change."""
        if current == ItemStatus.PENDING and new == self.assigned_status:
            raise InvalidTransitionError(
                f"Cannot move from {current.value} to {new.value} without assigning reviewers",
                current_status=current.value,
                requested_status=new.value,
            )
        self._check(current, new)

    def validate_assignment(self, current: ItemStatus) -> ItemStatus:
        """Check that reviewers may be assigned and return the resulting status."""
        if current != ItemStatus.PENDING:
            raise InvalidTransitionError(
                f"Reviewers can only be assigned while pending (status is {current.value})",
                current_status=current.value,
                requested_status=self.assigned_status.value,
            )
        self._check(current, self.assigned_status)
        return self.assigned_status

    def _check(self, current: ItemStatus, new: ItemStatus) -> None:
        if not self.can_transition(current, new):
            allowed = sorted(s.value for s in self.allowed_from(current))
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {new.value}. Allowed: {allowed}",
                current_status=current.value,
                requested_status=new.value,
            )


GENERIC_MACHINE = StateMachine(
    name="approval",
    transitions=GENERIC_TRANSITIONS,
    assigned_status=ItemStatus.ASSIGNED,
)

EXPERT_REVIEW_MACHINE = StateMachine(
    name="expert_review",
    transitions=EXPERT_REVIEW_TRANSITIONS,
    assigned_status=ItemStatus.IN_PROGRESS,
)


def machine_for(module_type: ModuleType) -> StateMachine:
    if module_type == ModuleType.EXPERT_LEGAL_REVIEW:
        return EXPERT_REVIEW_MACHINE
    return GENERIC_MACHINE
