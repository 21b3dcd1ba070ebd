"""
ApprovalFlow Server - HTTP surface for the approval and assignment workflow.

Run with:
    approvalflow-server            # CLI entry point
    python -m approvalflow.server  # Module entry point

Or programmatically:
    from approvalflow.server import ApprovalFlowServer
    server = ApprovalFlowServer(port=8000)
    server.run()
"""

from .app import ApprovalFlowServer, build_services, create_app
from .config import ServerConfig
from ..database import Database, get_database

__all__ = [
    "create_app",
    "build_services",
    "ApprovalFlowServer",
    "ServerConfig",
    "get_database",
    "Database",
]
