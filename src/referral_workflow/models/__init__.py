"""
Database models for the referral workflow.

This module exports all models, enums, and database utilities.
"""

from referral_workflow.models.base import (
    Base,
    SessionLocal,
    build_engine,
    build_session_factory,
    engine,
    get_session,
    init_db,
    reset_db,
    session_scope,
    utcnow,
)

# Enums
from referral_workflow.models.enums import (
    AppointmentType,
    AuditAction,
    AuthorizationStatus,
    EscalationStatus,
    FollowUpStatus,
    OPEN_STATUSES,
    QueueItemStatus,
    ReferralStatus,
    UrgencyLevel,
    WorkflowEventType,
)

# Referral lifecycle models
from referral_workflow.models.referral import (
    Authorization,
    DocumentSequence,
    Escalation,
    FollowUpTask,
    Referral,
    StatusHistory,
)

# Queue models
from referral_workflow.models.queue import (
    QueueItem,
    WorkQueue,
)

# Metric models
from referral_workflow.models.metrics import (
    QualityMetric,
    SpecialistMetric,
    SpecialistRating,
)

# Directory models
from referral_workflow.models.directory import (
    Encounter,
    Patient,
    PatientInsurance,
    Provider,
    Specialist,
)

# Audit models
from referral_workflow.models.audit import (
    AuditEvent,
    WorkflowEvent,
)

__all__ = [
    # Base and utilities
    "Base",
    "SessionLocal",
    "build_engine",
    "build_session_factory",
    "engine",
    "get_session",
    "init_db",
    "reset_db",
    "session_scope",
    "utcnow",
    # Enums
    "AppointmentType",
    "AuditAction",
    "AuthorizationStatus",
    "EscalationStatus",
    "FollowUpStatus",
    "OPEN_STATUSES",
    "QueueItemStatus",
    "ReferralStatus",
    "UrgencyLevel",
    "WorkflowEventType",
    # Referral lifecycle models
    "Authorization",
    "DocumentSequence",
    "Escalation",
    "FollowUpTask",
    "Referral",
    "StatusHistory",
    # Queue models
    "QueueItem",
    "WorkQueue",
    # Metric models
    "QualityMetric",
    "SpecialistMetric",
    "SpecialistRating",
    # Directory models
    "Encounter",
    "Patient",
    "PatientInsurance",
    "Provider",
    "Specialist",
    # Audit models
    "AuditEvent",
    "WorkflowEvent",
]
