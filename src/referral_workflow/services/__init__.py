"""
Service layer for the referral workflow.
"""

from referral_workflow.services.validation_service import ReferralValidator, ValidationResult
from referral_workflow.services.state_machine import (
    Guard,
    ReferralStateMachine,
    TransitionContext,
    TRANSITIONS,
    build_transition_table,
)
from referral_workflow.services.action_pipeline import (
    ActionPipeline,
    AutomatedAction,
    PipelineReport,
    STATUS_ACTIONS,
    build_status_actions,
)
from referral_workflow.services.urgency_monitor import (
    DEFAULT_POLICIES,
    TIME_LIMIT_EXCEEDED,
    UrgencyMonitor,
    UrgencyPolicy,
)
from referral_workflow.services.audit_service import AuditTrail, SqlAuditSink
from referral_workflow.services.directory_service import SqlDirectory
from referral_workflow.services.notification_service import (
    LoggingNotifier,
    PlainLetterRenderer,
    WebhookNotifier,
    get_notifier,
)
from referral_workflow.services.referral_store import SqlReferralStore
from referral_workflow.services.ports import (
    AuditSink,
    Directory,
    LetterRenderer,
    Notification,
    Notifier,
    ReferralFilters,
    ReferralPage,
    ReferralSnapshot,
    ReferralStats,
    ReferralStore,
)
from referral_workflow.services.lifecycle_service import (
    ReferralLifecycleService,
    build_lifecycle_service,
    get_lifecycle_service,
    seed_queues,
)

__all__ = [
    # Core workflow
    "ReferralValidator",
    "ValidationResult",
    "Guard",
    "ReferralStateMachine",
    "TransitionContext",
    "TRANSITIONS",
    "build_transition_table",
    "ActionPipeline",
    "AutomatedAction",
    "PipelineReport",
    "STATUS_ACTIONS",
    "build_status_actions",
    "DEFAULT_POLICIES",
    "TIME_LIMIT_EXCEEDED",
    "UrgencyMonitor",
    "UrgencyPolicy",
    "AuditTrail",
    # Adapters
    "SqlAuditSink",
    "SqlDirectory",
    "SqlReferralStore",
    "LoggingNotifier",
    "WebhookNotifier",
    "PlainLetterRenderer",
    "get_notifier",
    # Ports
    "AuditSink",
    "Directory",
    "LetterRenderer",
    "Notification",
    "Notifier",
    "ReferralFilters",
    "ReferralPage",
    "ReferralSnapshot",
    "ReferralStats",
    "ReferralStore",
    # Facade
    "ReferralLifecycleService",
    "build_lifecycle_service",
    "get_lifecycle_service",
    "seed_queues",
]
