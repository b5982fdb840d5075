"""
Urgency/SLA monitor.

Each urgency tier has a processing-time policy. A referral that outlives
its policy while still open (draft through scheduled) gets a
TIME_LIMIT_EXCEEDED escalation, at most one active at a time. Completed,
cancelled and expired referrals are never escalated automatically.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from referral_workflow.errors import NotFoundError
from referral_workflow.models import (
    AuditAction,
    Escalation,
    EscalationStatus,
    OPEN_STATUSES,
    Referral,
    UrgencyLevel,
    WorkflowEventType,
    utcnow,
)
from referral_workflow.services.audit_service import AuditTrail
from referral_workflow.services.ports import Notification, Notifier, ReferralStore

logger = logging.getLogger(__name__)

TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class UrgencyPolicy:
    """Processing-time policy for one urgency tier."""

    max_processing_hours: int
    priority_level: int
    auto_escalation: bool
    required_approvals: tuple[str, ...] = ()


DEFAULT_POLICIES: Mapping[UrgencyLevel, UrgencyPolicy] = MappingProxyType(
    {
        UrgencyLevel.STAT: UrgencyPolicy(
            max_processing_hours=2,
            priority_level=1,
            auto_escalation=True,
            required_approvals=("attending_physician",),
        ),
        UrgencyLevel.URGENT: UrgencyPolicy(
            max_processing_hours=24, priority_level=2, auto_escalation=True
        ),
        UrgencyLevel.ROUTINE: UrgencyPolicy(
            max_processing_hours=72, priority_level=3, auto_escalation=False
        ),
    }
)


def raised_urgency(current: UrgencyLevel) -> UrgencyLevel:
    """Escalated urgency: routine becomes urgent, higher tiers stay."""
    if current == UrgencyLevel.ROUTINE:
        return UrgencyLevel.URGENT
    return current


class UrgencyMonitor:
    """
    Creates escalations for referrals that breach their SLA.

    Args:
        store: Referral persistence
        notifier: Receives escalation notices (best-effort)
        audit: Audit trail
        policies: Urgency tier -> policy
        clock: Returns the current naive-UTC time
    """

    def __init__(
        self,
        store: ReferralStore,
        notifier: Notifier,
        audit: AuditTrail,
        policies: Mapping[UrgencyLevel, UrgencyPolicy] = DEFAULT_POLICIES,
        clock: Callable[[], datetime] = utcnow,
    ):
        missing = set(UrgencyLevel) - set(policies)
        if missing:
            raise ValueError(f"No urgency policy for: {sorted(u.value for u in missing)}")
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.policies = policies
        self.clock = clock

    def policy_for(self, urgency: UrgencyLevel) -> UrgencyPolicy:
        return self.policies[urgency]

    def is_overdue(self, referral: Referral, now: Optional[datetime] = None) -> bool:
        """Check the referral against its tier's policy."""
        policy = self.policies[referral.urgency_level]
        if not policy.auto_escalation or referral.status not in OPEN_STATUSES:
            return False
        elapsed = (now or self.clock()) - referral.created_at
        return elapsed > timedelta(hours=policy.max_processing_hours)

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def evaluate(self, referral_id: int) -> Optional[Escalation]:
        """
        Escalate the referral if it has breached its SLA.

        Returns the new escalation, or None when nothing was due or an
        active TIME_LIMIT_EXCEEDED escalation already exists.
        """
        with self.store.transaction() as session:
            referral = self.store.get_referral(session, referral_id, for_update=True)
            if referral is None or not self.is_overdue(referral):
                return None
            if self.store.has_active_escalation(session, referral.id, TIME_LIMIT_EXCEEDED):
                return None

            previous_urgency = referral.urgency_level
            escalation = self._open_escalation(
                session, referral, TIME_LIMIT_EXCEEDED, SYSTEM_ACTOR
            )

        logger.warning(
            f"Referral {referral.referral_number} exceeded its "
            f"{previous_urgency.value} SLA; escalation {escalation.id} created"
        )
        self._after_escalation(referral, escalation, previous_urgency, SYSTEM_ACTOR)
        return escalation

    def escalate(
        self,
        referral_id: int,
        reason: str,
        actor: Optional[str],
        level: int = 1,
        assigned_to: Optional[str] = None,
    ) -> Escalation:
        """Manually escalate a referral. Always creates a record."""
        with self.store.transaction() as session:
            referral = self.store.get_referral(session, referral_id, for_update=True)
            if referral is None:
                raise NotFoundError("Referral", referral_id)

            previous_urgency = referral.urgency_level
            escalation = self._open_escalation(
                session, referral, reason, actor, level=level, assigned_to=assigned_to
            )

        logger.warning(
            f"Referral {referral.referral_number} escalated by {actor}: {reason}"
        )
        self._after_escalation(referral, escalation, previous_urgency, actor)
        return escalation

    def sweep(self) -> list[Escalation]:
        """Evaluate every open referral. One failing referral does not stop the sweep."""
        with self.store.transaction() as session:
            referral_ids = self.store.open_referral_ids(session)

        created = []
        for referral_id in referral_ids:
            try:
                escalation = self.evaluate(referral_id)
            except SQLAlchemyError:
                logger.exception(f"SLA evaluation failed for referral {referral_id}")
                continue
            if escalation is not None:
                created.append(escalation)

        logger.info(f"SLA sweep checked {len(referral_ids)} referral(s), escalated {len(created)}")
        return created

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _open_escalation(
        self,
        session: Session,
        referral: Referral,
        reason: str,
        actor: Optional[str],
        level: int = 1,
        assigned_to: Optional[str] = None,
    ) -> Escalation:
        escalation = Escalation(
            referral_id=referral.id,
            reason=reason,
            level=level,
            escalated_by=actor,
            assigned_to=assigned_to,
            status=EscalationStatus.ACTIVE,
            created_at=self.clock(),
        )
        session.add(escalation)

        new_urgency = raised_urgency(referral.urgency_level)
        if new_urgency != referral.urgency_level:
            referral.urgency_level = new_urgency
            referral.updated_at = self.clock()

        session.flush()
        return escalation

    def _after_escalation(
        self,
        referral: Referral,
        escalation: Escalation,
        previous_urgency: UrgencyLevel,
        actor: Optional[str],
    ) -> None:
        policy = self.policies[previous_urgency]
        try:
            self.notifier.send(
                Notification(
                    kind="escalation",
                    recipient=escalation.assigned_to or referral.provider_id,
                    subject=f"Referral {referral.referral_number} escalated: {escalation.reason}",
                    referral_id=referral.id,
                    metadata={
                        "level": escalation.level,
                        "urgency": referral.urgency_level.value,
                        "required_approvals": list(policy.required_approvals),
                    },
                )
            )
        except Exception:
            logger.exception(f"Escalation notice for referral {referral.id} was not delivered")

        self.audit.record(
            AuditAction.REFERRAL_ESCALATED,
            "referral",
            referral.id,
            old_values={"urgency_level": previous_urgency},
            new_values={
                "urgency_level": referral.urgency_level,
                "escalation_id": escalation.id,
                "reason": escalation.reason,
                "level": escalation.level,
            },
            actor=actor,
        )
        self.audit.workflow_event(
            referral.id,
            WorkflowEventType.ESCALATION_CREATED,
            {"escalation_id": escalation.id, "reason": escalation.reason},
            created_by=actor,
        )
