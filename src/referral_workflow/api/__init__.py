"""
HTTP API for the referral workflow.
"""

from referral_workflow.api.main import app, create_app

__all__ = ["app", "create_app"]
