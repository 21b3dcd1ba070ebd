#!/usr/bin/env python3
"""
ApprovalFlow - Basic Usage Example

Submits a risk assessment, lets the server pick a reviewer, and walks the
item through review.

Prerequisites:
    pip install "approvalflow[server]"
    approvalflow-server --reviewers-file examples/reviewers.yaml \
        --routing-file examples/routing.yaml

Usage:
    export APPROVALFLOW_API_URL=http://localhost:8000
    export APPROVALFLOW_API_KEY=dev-admin-key
    python basic_usage.py
"""

import os

from approvalflow import (
    ApprovalFlowClient,
    AutoAssignmentDisabledError,
    DuplicatePendingItemError,
    StaleStateError,
)


def main():
    base_url = os.getenv("APPROVALFLOW_API_URL", "http://localhost:8000")
    api_key = os.getenv("APPROVALFLOW_API_KEY", "dev-admin-key")

    with ApprovalFlowClient(base_url=base_url, api_key=api_key, user_id="compliance-bot") as client:

        # 1. Discover the server
        print("1. Discovering server...")
        discovery = client.discover()
        print(f"   API version: {discovery['apiVersion']}")
        print(f"   Strategies: {', '.join(discovery['strategies'])}")

        # 2. Submit an artifact for approval
        print("\n2. Submitting risk assessment...")
        try:
            item_id = client.submit_item(
                "risk_assessment",
                "hr-screening-model",
                "Risk assessment: CV screening model",
                description="Annual review of the hiring classifier",
                priority="high",
            )
        except DuplicatePendingItemError as e:
            print(f"   Already pending as {e.existing_item_id}")
            item_id = e.existing_item_id
        print(f"   Item: {item_id}")

        # 3. Auto-assign with the configured strategy
        print("\n3. Auto-assigning...")
        item = client.get_item(item_id)
        if item.status.value == "pending":
            try:
                item = client.auto_assign(item_id, expected_version=item.version)
            except AutoAssignmentDisabledError:
                item = client.auto_assign(item_id, force_assign=True)
        print(f"   Assigned to: {', '.join(item.assignees)} (status {item.status.value})")

        # 4. Reviewer starts and completes the review
        print("\n4. Reviewing...")
        try:
            item = client.update_status(item_id, "in_progress", expected_version=item.version)
            item = client.update_status(
                item_id, "completed", feedback="Controls adequate", expected_version=item.version
            )
        except StaleStateError as e:
            print(f"   Someone else changed the item (now version {e.current_version})")
        print(f"   Status: {item.status.value}")

        # 5. Audit trail
        print("\n5. History:")
        for event in client.get_events(item_id):
            old = event.old_status.value if event.old_status else "-"
            print(f"   {event.event_type.value:<11} {old} -> {event.new_status.value}")

        # 6. Reviewer inbox
        reviewer = item.assignees[0] if item.assignees else None
        if reviewer:
            print(f"\n6. Inbox for {reviewer}:")
            for notification in client.list_notifications(reviewer):
                print(f"   [{notification.type}] {notification.title}: {notification.message}")


if __name__ == "__main__":
    main()
