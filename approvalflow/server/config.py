"""
Server configuration for ApprovalFlow.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Set


@dataclass
class ServerConfig:
    """Configuration for the ApprovalFlow server."""

    host: str = "0.0.0.0"
    port: int = 8000

    database_url: Optional[str] = None

    api_keys: Set[str] = field(
        default_factory=lambda: {
            "dev-admin-key",
            "dev-reviewer-key",
        }
    )

    cors_origins: list = field(default_factory=lambda: ["*"])

    debug: bool = False

    log_level: str = "info"

    api_version: str = "v1"

    # YAML overrides for module routing and reviewer seed data.
    routing_file: Optional[str] = None
    reviewers_file: Optional[str] = None

    # External collaborators; unset means the built-in implementation.
    directory_url: Optional[str] = None
    webhook_url: Optional[str] = None
    text_analysis_url: Optional[str] = None

    start_dispatcher: bool = True

    def __post_init__(self):
        if self.database_url is None:
            self.database_url = os.environ.get("DATABASE_URL", "sqlite:///./approvalflow.db")

        env_keys = os.environ.get("APPROVALFLOW_API_KEYS")
        if env_keys:
            self.api_keys = {k.strip() for k in env_keys.split(",") if k.strip()}

        if self.routing_file is None:
            self.routing_file = os.environ.get("APPROVALFLOW_ROUTING_FILE")
        if self.reviewers_file is None:
            self.reviewers_file = os.environ.get("APPROVALFLOW_REVIEWERS_FILE")
        if self.directory_url is None:
            self.directory_url = os.environ.get("APPROVALFLOW_DIRECTORY_URL")
        if self.webhook_url is None:
            self.webhook_url = os.environ.get("APPROVALFLOW_WEBHOOK_URL")
        if self.text_analysis_url is None:
            self.text_analysis_url = os.environ.get("APPROVALFLOW_TEXT_ANALYSIS_URL")

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create configuration from environment variables."""
        return cls(
            host=os.environ.get("APPROVALFLOW_HOST", "0.0.0.0"),
            port=int(os.environ.get("APPROVALFLOW_PORT", "8000")),
            database_url=os.environ.get("DATABASE_URL"),
            debug=os.environ.get("APPROVALFLOW_DEBUG", "").lower() == "true",
            log_level=os.environ.get("APPROVALFLOW_LOG_LEVEL", "info"),
        )
