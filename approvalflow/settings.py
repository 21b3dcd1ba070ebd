"""
Settings Store for the process-wide auto-assignment configuration.
"""

import logging
import threading
from typing import Any, Optional, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .database import AutoAssignmentSettingsModel, Database
from .exceptions import StaleStateError
from .models import AutoAssignmentSettings, RetryPolicy, StrategyType, utcnow
from .retry import call_with_retry
from .validation import validate_settings

logger = logging.getLogger("approvalflow.settings")

DEFAULT_SETTINGS = AutoAssignmentSettings(
    enabled=True,
    strategy_type=StrategyType.WORKLOAD_BALANCED,
    eligible_roles=frozenset({"admin", "decision_maker"}),
    eligible_departments=frozenset({"Legal & Compliance", "IT"}),
)


def settings_from_row(row: AutoAssignmentSettingsModel) -> AutoAssignmentSettings:
    return AutoAssignmentSettings(
        enabled=bool(row.enabled),
        strategy_type=StrategyType(row.strategy_type),
        eligible_roles=frozenset(row.eligible_roles or []),
        eligible_departments=frozenset(row.eligible_departments or []),
        version=row.version,
        round_robin_cursor=row.round_robin_cursor,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
    )


class SettingsStore:
    """
    Versioned singleton holding ``AutoAssignmentSettings``.

    Updates replace the record wholesale after validation. ``lock`` guards
    the read-settings, pick-reviewer, write-assignees sequence in the engine;
    the version column catches writers in other processes.
    """

    def __init__(
        self,
        db: Database,
        defaults: Optional[AutoAssignmentSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.db = db
        self.defaults = defaults or DEFAULT_SETTINGS
        self.retry_policy = retry_policy or RetryPolicy()
        self.lock = threading.RLock()

    def _run(self, description: str, operation):
        def attempt():
            with self.db.transaction() as session:
                return operation(session)

        return call_with_retry(
            attempt,
            policy=self.retry_policy,
            retry_on=(OperationalError,),
            description=description,
        )

    def _load_row(self, session: Session) -> AutoAssignmentSettingsModel:
        row = self.db.get_settings(session)
        if row is None:
            row = self.db.create_settings(
                session,
                enabled=self.defaults.enabled,
                strategy_type=self.defaults.strategy_type.value,
                eligible_roles=sorted(self.defaults.eligible_roles),
                eligible_departments=sorted(self.defaults.eligible_departments),
                version=1,
                updated_at=utcnow(),
            )
            logger.info("Initialized auto-assignment settings with defaults")
        return row

    def get(self) -> AutoAssignmentSettings:
        try:
            return self._run(
                "read settings", lambda session: settings_from_row(self._load_row(session))
            )
        except IntegrityError:
            # Another process inserted the row first.
            return self._run(
                "read settings", lambda session: settings_from_row(self._load_row(session))
            )

    def update(
        self,
        new_settings: Union[dict[str, Any], AutoAssignmentSettings],
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> AutoAssignmentSettings:
        """
        Validate and replace the settings record.

        Raises:
            InvalidStrategyError: Unknown strategy type.
            InvalidRoleOrDepartmentError: Empty role/department set while enabled.
            StaleStateError: ``expected_version`` no longer matches.
        """
        validated = validate_settings(new_settings)
        self.get()

        def operation(session: Session):
            row = self._load_row(session)
            if expected_version is not None and row.version != expected_version:
                raise StaleStateError(
                    f"Settings are at version {row.version}, not {expected_version}",
                    current_version=row.version,
                )
            if not self.db.compare_and_set_settings(
                session,
                row.version,
                enabled=validated.enabled,
                strategy_type=validated.strategy_type.value,
                eligible_roles=sorted(validated.eligible_roles),
                eligible_departments=sorted(validated.eligible_departments),
                updated_by=actor,
            ):
                session.refresh(row)
                raise StaleStateError(
                    "Settings changed during update", current_version=row.version
                )
            session.refresh(row)
            return settings_from_row(row)

        with self.lock:
            result = self._run("update settings", operation)
        logger.info(
            "Auto-assignment settings updated to version %d (strategy=%s, enabled=%s)",
            result.version,
            result.strategy_type.value,
            result.enabled,
        )
        return result

    def advance_cursor(self, reviewer_id: str, session: Optional[Session] = None) -> None:
        """
        Move the round-robin cursor to ``reviewer_id``.

        Does not bump the settings version. With ``session`` the write joins
        the caller's transaction.
        """

        def operation(s: Session):
            row = self._load_row(s)
            row.round_robin_cursor = reviewer_id
            s.flush()

        if session is not None:
            operation(session)
        else:
            with self.lock:
                self._run("advance round-robin cursor", operation)
