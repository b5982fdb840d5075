"""
Enum definitions for the referral workflow.

This module centralizes all enum types used across the application
to ensure consistency in status values, urgency tiers, and event names.
"""

import enum


class ReferralStatus(enum.Enum):
    """Lifecycle status of a referral."""

    DRAFT = "draft"  # Created, possibly incomplete
    PENDING = "pending"  # Complete and awaiting send
    SENT = "sent"  # Sent to the specialist
    SCHEDULED = "scheduled"  # Appointment booked
    COMPLETED = "completed"  # Terminal
    CANCELLED = "cancelled"  # Can only be reactivated to draft
    EXPIRED = "expired"  # Unscheduled too long after sending


# Statuses still being worked; the rest are closed to SLA tracking
OPEN_STATUSES = (
    ReferralStatus.DRAFT,
    ReferralStatus.PENDING,
    ReferralStatus.SENT,
    ReferralStatus.SCHEDULED,
)


class UrgencyLevel(enum.Enum):
    """Clinical urgency tier, which also selects the SLA policy."""

    ROUTINE = "routine"
    URGENT = "urgent"
    STAT = "stat"


class AppointmentType(enum.Enum):
    """Kind of appointment requested from the specialist."""

    CONSULTATION = "consultation"
    TREATMENT = "treatment"
    SECOND_OPINION = "second_opinion"
    PROCEDURE = "procedure"


class AuthorizationStatus(enum.Enum):
    """Payer pre-approval state for a referral."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EscalationStatus(enum.Enum):
    """State of an escalation record."""

    ACTIVE = "active"
    RESOLVED = "resolved"


class QueueItemStatus(enum.Enum):
    """Status of an item within a work queue."""

    PENDING = "pending"  # Waiting to be processed
    IN_PROGRESS = "in_progress"  # Currently being worked on
    COMPLETED = "completed"  # Successfully processed


class FollowUpStatus(enum.Enum):
    """Status of a follow-up task."""

    OPEN = "open"
    DONE = "done"


class WorkflowEventType(enum.Enum):
    """Types of workflow events written alongside audit events."""

    STATUS_CHANGE = "STATUS_CHANGE"
    AUTOMATED_ACTION_FAILED = "AUTOMATED_ACTION_FAILED"
    ESCALATION_CREATED = "ESCALATION_CREATED"


class AuditAction(enum.Enum):
    """Actions recorded by the audit trail."""

    REFERRAL_CREATED = "REFERRAL_CREATED"
    REFERRAL_STATUS_UPDATED = "REFERRAL_STATUS_UPDATED"
    TRANSITION_REJECTED = "TRANSITION_REJECTED"
    AUTHORIZATION_REQUESTED = "AUTHORIZATION_REQUESTED"
    AUTHORIZATION_UPDATED = "AUTHORIZATION_UPDATED"
    REFERRAL_ESCALATED = "REFERRAL_ESCALATED"
