#!/usr/bin/env python3
"""
ApprovalFlow - Embedded Engine Example

Runs the assignment engine in-process against a local SQLite file, with
reviewers seeded from YAML and round-robin assignment.

Usage:
    python embedded_engine.py
"""

import logging
from pathlib import Path

from approvalflow import (
    AssignmentEngine,
    Database,
    DatabaseUserDirectory,
    ExpertReviewService,
    InboxNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    ReviewableItemStore,
    RoutingRules,
    SettingsStore,
    load_reviewers_yaml,
)

HERE = Path(__file__).parent


def main():
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")

    db = Database("sqlite:///./approvalflow-example.db")
    db.create_tables()

    store = ReviewableItemStore(db)
    settings = SettingsStore(db)
    directory = DatabaseUserDirectory(db, workload=store.open_assignment_counts)
    directory.load(load_reviewers_yaml(HERE / "reviewers.yaml"))

    inbox = InboxNotificationSink(db)
    dispatcher = NotificationDispatcher([LoggingNotificationSink(), inbox])
    dispatcher.start()

    engine = AssignmentEngine(
        store,
        directory,
        settings,
        dispatcher=dispatcher,
        routing=RoutingRules.from_yaml(HERE / "routing.yaml"),
    )
    current = engine.get_auto_assignment_settings()
    engine.update_auto_assignment_settings(
        {**current.to_dict(), "strategy_type": "round_robin"},
        expected_version=current.version,
        actor="example",
    )

    for n in range(4):
        if engine.check_exists("document", f"policy-{n}"):
            continue
        item_id = engine.submit_for_approval("document", f"policy-{n}", f"Policy {n}")
        item = engine.auto_assign(item_id)
        print(f"policy-{n} -> {item.assignees[0]}")

    experts = ExpertReviewService(engine)
    review = experts.request_review(
        "The system might be high risk under Article 6. It is possibly exempt.",
        review_type="risk_assessment",
    )
    print(f"Expert review {review.id}: {review.validation_result.confidence_level.value}")
    for issue in review.validation_result.issues:
        print(f"  issue: {issue}")

    dispatcher.drain()
    dispatcher.stop()
    print(f"Unread for ana: {inbox.unread_count('ana')}")


if __name__ == "__main__":
    main()
