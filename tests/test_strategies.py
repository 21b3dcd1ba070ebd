"""
Tests for assignment strategies.
"""

import pytest

from approvalflow.exceptions import InvalidStrategyError
from approvalflow.models import (
    AutoAssignmentSettings,
    ModuleType,
    Reviewer,
    ReviewableItem,
    StrategyType,
)
from approvalflow.routing import RoutingRules
from approvalflow.strategies import (
    DepartmentBasedStrategy,
    ExpertiseBasedStrategy,
    RoundRobinStrategy,
    WorkloadBalancedStrategy,
    get_strategy,
)

SETTINGS = AutoAssignmentSettings(
    eligible_roles=frozenset({"admin", "decision_maker"}),
    eligible_departments=frozenset({"Legal & Compliance", "IT"}),
)


def _item(module_type=ModuleType.RISK_ASSESSMENT):
    return ReviewableItem(id="i1", module_type=module_type, module_id="m1", title="Item")


def _reviewer(rid, count=0, role="decision_maker", department="IT"):
    return Reviewer(
        id=rid,
        display_name=rid.upper(),
        role=role,
        department=department,
        open_assignment_count=count,
    )


class TestWorkloadBalanced:
    """Tests for WorkloadBalancedStrategy."""

    def test_least_loaded_wins(self):
        pool = [_reviewer("u1", 2), _reviewer("u2", 0), _reviewer("u3", 5)]
        assert WorkloadBalancedStrategy().select(_item(), pool, SETTINGS) == ["u2"]

    def test_tie_among_least_loaded(self):
        pool = [_reviewer("u1", 3), _reviewer("u2", 1), _reviewer("u3", 1)]
        assert WorkloadBalancedStrategy().select(_item(), pool, SETTINGS) == ["u2"]

    def test_ties_go_to_lowest_id(self):
        pool = [_reviewer("u3", 1), _reviewer("u1", 1), _reviewer("u2", 4)]
        assert WorkloadBalancedStrategy().select(_item(), pool, SETTINGS) == ["u1"]

    def test_empty_pool(self):
        assert WorkloadBalancedStrategy().select(_item(), [], SETTINGS) == []


class TestRoundRobin:
    """Tests for RoundRobinStrategy."""

    def test_starts_at_first_without_cursor(self):
        pool = [_reviewer("u2"), _reviewer("u1")]
        assert RoundRobinStrategy().select(_item(), pool, SETTINGS) == ["u1"]

    def test_next_after_cursor(self):
        assert RoundRobinStrategy.next_after(["u1", "u2", "u3"], "u1") == "u2"
        assert RoundRobinStrategy.next_after(["u1", "u2", "u3"], "u2") == "u3"

    def test_wraps_around(self):
        assert RoundRobinStrategy.next_after(["u1", "u2", "u3"], "u3") == "u1"

    def test_cursor_no_longer_in_pool(self):
        # u2 left the pool; the next id after it is still u3
        assert RoundRobinStrategy.next_after(["u1", "u3"], "u2") == "u3"

    def test_ignores_workload(self):
        settings = AutoAssignmentSettings(
            strategy_type=StrategyType.ROUND_ROBIN, round_robin_cursor="u1"
        )
        pool = [_reviewer("u1", 0), _reviewer("u2", 9)]
        assert RoundRobinStrategy().select(_item(), pool, settings) == ["u2"]

    def test_empty_pool(self):
        assert RoundRobinStrategy().select(_item(), [], SETTINGS) == []


class TestMatchingStrategies:
    """Tests for the department and expertise strategies."""

    def test_department_match_preferred(self):
        pool = [
            _reviewer("u1", 0, department="IT"),
            _reviewer("u2", 3, department="Legal & Compliance"),
        ]
        chosen = DepartmentBasedStrategy().select(_item(ModuleType.DOCUMENT), pool, SETTINGS)
        assert chosen == ["u2"]

    def test_department_falls_back_to_whole_pool(self):
        pool = [_reviewer("u1", 2, department="IT"), _reviewer("u2", 1, department="IT")]
        chosen = DepartmentBasedStrategy().select(_item(ModuleType.DOCUMENT), pool, SETTINGS)
        assert chosen == ["u2"]

    def test_expertise_match_by_role(self):
        pool = [
            _reviewer("u1", 0, role="decision_maker"),
            _reviewer("u2", 4, role="admin"),
        ]
        chosen = ExpertiseBasedStrategy().select(_item(ModuleType.DOCUMENT), pool, SETTINGS)
        assert chosen == ["u2"]

    def test_custom_routing_rules(self):
        rules = RoutingRules.from_dict({"departments": {"document": ["IT"]}})
        pool = [
            _reviewer("u1", 5, department="IT"),
            _reviewer("u2", 0, department="Legal & Compliance"),
        ]
        chosen = DepartmentBasedStrategy(rules).select(_item(ModuleType.DOCUMENT), pool, SETTINGS)
        assert chosen == ["u1"]

    def test_empty_pool(self):
        assert ExpertiseBasedStrategy().select(_item(), [], SETTINGS) == []


class TestGetStrategy:
    """Tests for the strategy factory."""

    @pytest.mark.parametrize(
        "strategy_type,cls",
        [
            ("workload_balanced", WorkloadBalancedStrategy),
            ("round_robin", RoundRobinStrategy),
            (StrategyType.DEPARTMENT_BASED, DepartmentBasedStrategy),
            (StrategyType.EXPERTISE_BASED, ExpertiseBasedStrategy),
        ],
    )
    def test_known_strategies(self, strategy_type, cls):
        assert isinstance(get_strategy(strategy_type), cls)

    def test_unknown_strategy(self):
        with pytest.raises(InvalidStrategyError) as exc:
            get_strategy("alphabetical")
        assert exc.value.field == "strategy_type"
        assert exc.value.strategy_type == "alphabetical"
