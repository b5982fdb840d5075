"""
Referral workflow engine.

Guarded lifecycle for clinical referrals: validation, status transitions,
SLA escalation and automated follow-up actions.
"""

__version__ = "0.1.0"
