"""
Assignment strategies.

Each strategy is a pure selection over a reviewer pool that has already been
filtered to the eligible roles and departments. Strategies never raise on an
empty pool; they return an empty list and the engine decides what that means.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from .exceptions import InvalidStrategyError
from .models import AutoAssignmentSettings, Reviewer, ReviewableItem, StrategyType
from .routing import RoutingRules


def _by_workload(pool: Sequence[Reviewer]) -> list[Reviewer]:
    return sorted(pool, key=lambda r: (r.open_assignment_count, r.id))


class AssignmentStrategy(ABC):
    strategy_type: StrategyType

    @abstractmethod
    def select(
        self,
        item: ReviewableItem,
        pool: Sequence[Reviewer],
        settings: AutoAssignmentSettings,
    ) -> list[str]:
        """Return the chosen reviewer ids (empty when nobody fits)."""


class WorkloadBalancedStrategy(AssignmentStrategy):
    """Lowest open-assignment count wins; ties go to the lowest id."""

    strategy_type = StrategyType.WORKLOAD_BALANCED

    def select(self, item, pool, settings):
        ranked = _by_workload(pool)
        return [ranked[0].id] if ranked else []


class RoundRobinStrategy(AssignmentStrategy):
    """
    Next reviewer after the settings cursor, over the pool sorted by id.

    The cursor is only read here. The engine advances it once the assignment
    has been written.
    """

    strategy_type = StrategyType.ROUND_ROBIN

    def select(self, item, pool, settings):
        ids = sorted({r.id for r in pool})
        if not ids:
            return []
        chosen = self.next_after(ids, settings.round_robin_cursor)
        return [chosen]

    @staticmethod
    def next_after(ordered_ids: Sequence[str], cursor: Optional[str]) -> str:
        if cursor is not None:
            for reviewer_id in ordered_ids:
                if reviewer_id > cursor:
                    return reviewer_id
        return ordered_ids[0]


class _MatchingStrategy(AssignmentStrategy):
    """Prefer reviewers matching the module type; fall back to workload over the pool."""

    def __init__(self, rules: Optional[RoutingRules] = None):
        self.rules = rules or RoutingRules()
        self._fallback = WorkloadBalancedStrategy()

    @abstractmethod
    def matches(self, item: ReviewableItem, reviewer: Reviewer) -> bool:
        ...

    def select(self, item, pool, settings):
        preferred = [r for r in pool if self.matches(item, r)]
        if preferred:
            return self._fallback.select(item, preferred, settings)
        return self._fallback.select(item, pool, settings)


class DepartmentBasedStrategy(_MatchingStrategy):
    strategy_type = StrategyType.DEPARTMENT_BASED

    def matches(self, item, reviewer):
        return reviewer.department in self.rules.departments_for(item.module_type)


class ExpertiseBasedStrategy(_MatchingStrategy):
    strategy_type = StrategyType.EXPERTISE_BASED

    def matches(self, item, reviewer):
        return reviewer.role in self.rules.roles_for(item.module_type)


_STRATEGY_CLASSES = {
    StrategyType.WORKLOAD_BALANCED: WorkloadBalancedStrategy,
    StrategyType.ROUND_ROBIN: RoundRobinStrategy,
    StrategyType.DEPARTMENT_BASED: DepartmentBasedStrategy,
    StrategyType.EXPERTISE_BASED: ExpertiseBasedStrategy,
}


def get_strategy(strategy_type, rules: Optional[RoutingRules] = None) -> AssignmentStrategy:
    try:
        strategy_type = StrategyType(strategy_type)
    except ValueError:
        valid = [s.value for s in StrategyType]
        raise InvalidStrategyError(
            f"Unknown strategy '{strategy_type}'. Valid: {valid}",
            strategy_type=strategy_type,
        )

    cls = _STRATEGY_CLASSES[strategy_type]
    if issubclass(cls, _MatchingStrategy):
        return cls(rules)
    return cls()
