"""
Command-line interface for the ApprovalFlow server.
"""

import argparse
import logging
import sys


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="approvalflow-server",
        description="ApprovalFlow Server - approval and assignment workflow for compliance reviews",
    )

    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (default: sqlite:///./approvalflow.db)",
    )
    parser.add_argument(
        "--api-keys",
        default=None,
        help="Comma-separated list of API keys (default: dev-admin-key,dev-reviewer-key)",
    )
    parser.add_argument(
        "--routing-file",
        default=None,
        help="YAML file with module-to-department and module-to-role routing",
    )
    parser.add_argument(
        "--reviewers-file",
        default=None,
        help="YAML file with reviewers to load into the directory at startup",
    )
    parser.add_argument(
        "--webhook-url",
        default=None,
        help="Deliver transition events to this webhook",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    api_keys = None
    if args.api_keys:
        api_keys = {k.strip() for k in args.api_keys.split(",") if k.strip()}

    from .app import ApprovalFlowServer

    print(f"""
ApprovalFlow Server v0.1.0
  Host:     {args.host}
  Port:     {args.port}
  Database: {args.database_url or "sqlite:///./approvalflow.db"}

API Documentation: http://{args.host}:{args.port}/docs
Discovery:         http://{args.host}:{args.port}/.well-known/approvalflow.json

Press Ctrl+C to stop the server.
""")

    try:
        server = ApprovalFlowServer(
            host=args.host,
            port=args.port,
            database_url=args.database_url,
            api_keys=api_keys,
            routing_file=args.routing_file,
            reviewers_file=args.reviewers_file,
            webhook_url=args.webhook_url,
            debug=args.debug,
            log_level=args.log_level,
        )
        server.run()
    except KeyboardInterrupt:
        print("\nServer stopped.")
        sys.exit(0)


if __name__ == "__main__":
    main()
