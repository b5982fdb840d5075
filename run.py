#!/usr/bin/env python3
"""
Convenience script to run the Referral Workflow engine.
"""

import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))


def run_cli():
    """Run the CLI application."""
    from referral_workflow.cli import app
    app()


def run_api():
    """Run the FastAPI server."""
    import uvicorn
    uvicorn.run(
        "referral_workflow.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )


def run_sweep():
    """Escalate overdue referrals once."""
    from referral_workflow.services import get_lifecycle_service
    service = get_lifecycle_service()
    try:
        escalations = service.sweep_overdue()
        print(f"Escalated {len(escalations)} referral(s)")
    finally:
        service.shutdown(wait=True)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python run.py <command>")
        print()
        print("Commands:")
        print("  cli       Run the command-line interface")
        print("  api       Start the FastAPI web server")
        print("  sweep     Escalate overdue referrals once")
        sys.exit(1)

    command = sys.argv[1]
    sys.argv = [sys.argv[0]] + sys.argv[2:]  # Remove command from args

    commands = {
        "cli": run_cli,
        "api": run_api,
        "sweep": run_sweep,
    }

    if command not in commands:
        print(f"Unknown command: {command}")
        sys.exit(1)

    commands[command]()
