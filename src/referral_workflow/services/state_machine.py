"""
Referral lifecycle state machine.

Owns the transition table and the guards that gate each edge. The machine
mutates the referral and appends the history row inside the caller's
session; committing, retrying and auditing belong to the lifecycle service.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from referral_workflow.errors import GuardFailure, InvalidTransition, ValidationError
from referral_workflow.models import (
    AuthorizationStatus,
    Referral,
    ReferralStatus,
    StatusHistory,
    utcnow,
)
from referral_workflow.services.validation_service import ReferralValidator, as_datetime

logger = logging.getLogger(__name__)

HISTORY_TICK = timedelta(microseconds=1)


class Guard(enum.Enum):
    """Preconditions attached to transition table edges."""

    NONE = "none"
    COMPLETE = "guard_complete"
    READY_TO_SEND = "guard_ready_to_send"
    HAS_SCHEDULE_INFO = "guard_has_schedule_info"
    HAS_SCHEDULED_DATE = "guard_has_scheduled_date"
    UNSCHEDULED_TOO_LONG = "guard_30_days_unscheduled"
    REACTIVATION_ALLOWED = "guard_reactivation_allowed"
    RESEND_ALLOWED = "guard_resend_allowed"


TransitionTable = Mapping[ReferralStatus, Mapping[ReferralStatus, Guard]]


def build_transition_table() -> TransitionTable:
    """Build the read-only status -> {target: guard} table."""
    rows = {
        ReferralStatus.DRAFT: {
            ReferralStatus.PENDING: Guard.COMPLETE,
            ReferralStatus.CANCELLED: Guard.NONE,
        },
        ReferralStatus.PENDING: {
            ReferralStatus.SENT: Guard.READY_TO_SEND,
            ReferralStatus.CANCELLED: Guard.NONE,
        },
        ReferralStatus.SENT: {
            ReferralStatus.SCHEDULED: Guard.HAS_SCHEDULE_INFO,
            ReferralStatus.CANCELLED: Guard.NONE,
            ReferralStatus.EXPIRED: Guard.UNSCHEDULED_TOO_LONG,
        },
        ReferralStatus.SCHEDULED: {
            ReferralStatus.COMPLETED: Guard.HAS_SCHEDULED_DATE,
            ReferralStatus.CANCELLED: Guard.NONE,
        },
        ReferralStatus.COMPLETED: {},
        ReferralStatus.CANCELLED: {
            ReferralStatus.DRAFT: Guard.REACTIVATION_ALLOWED,
        },
        ReferralStatus.EXPIRED: {
            ReferralStatus.SENT: Guard.RESEND_ALLOWED,
            ReferralStatus.CANCELLED: Guard.NONE,
        },
    }
    return MappingProxyType(
        {status: MappingProxyType(targets) for status, targets in rows.items()}
    )


TRANSITIONS = build_transition_table()

# Targets whose entry is pre-checked by ReferralValidator.validate_for_action
ACTION_FOR_TARGET = MappingProxyType(
    {
        ReferralStatus.SENT: "send",
        ReferralStatus.SCHEDULED: "schedule",
        ReferralStatus.COMPLETED: "complete",
        ReferralStatus.CANCELLED: "cancel",
    }
)


@dataclass
class TransitionContext:
    """
    Caller-supplied details for one transition attempt.

    Recognized options: scheduled_date, completed_date, outcome_notes,
    cancellation_reason, follow_up_instructions.
    """

    actor: Optional[str] = None
    notes: Optional[str] = None
    options: Mapping[str, Any] = field(default_factory=dict)


class ReferralStateMachine:
    """
    Applies guarded status transitions to a loaded referral.

    Args:
        validator: Supplies the per-action pre-checks
        transitions: Transition table; defaults to TRANSITIONS
        expiration_days: Days a sent referral may stay unscheduled
        clock: Returns the current naive-UTC time
    """

    def __init__(
        self,
        validator: ReferralValidator,
        transitions: TransitionTable = TRANSITIONS,
        expiration_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.validator = validator
        self.transitions = transitions
        self.expiration_days = expiration_days
        self.clock = clock

        self._guards: Mapping[Guard, Callable[[Referral, TransitionContext], bool]] = (
            MappingProxyType(
                {
                    Guard.NONE: lambda referral, context: True,
                    Guard.COMPLETE: self._guard_complete,
                    Guard.READY_TO_SEND: self._guard_ready_to_send,
                    Guard.HAS_SCHEDULE_INFO: self._guard_has_schedule_info,
                    Guard.HAS_SCHEDULED_DATE: self._guard_has_scheduled_date,
                    Guard.UNSCHEDULED_TOO_LONG: self._guard_unscheduled_too_long,
                    Guard.REACTIVATION_ALLOWED: self._guard_reactivation_allowed,
                    Guard.RESEND_ALLOWED: self._guard_resend_allowed,
                }
            )
        )
        missing = set(Guard) - set(self._guards)
        if missing:
            raise ValueError(f"No guard implementation for: {sorted(g.value for g in missing)}")

        unknown = set(transitions) ^ set(ReferralStatus)
        if unknown:
            raise ValueError(f"Transition table does not cover: {sorted(s.value for s in unknown)}")

    def allowed_targets(self, status: ReferralStatus) -> tuple[ReferralStatus, ...]:
        """Statuses reachable in one step from ``status``."""
        return tuple(self.transitions.get(status, {}))

    # =========================================================================
    # TRANSITION
    # =========================================================================

    def attempt_transition(
        self,
        session: Session,
        referral: Referral,
        target: Union[ReferralStatus, str],
        context: TransitionContext,
    ) -> StatusHistory:
        """
        Move ``referral`` to ``target`` within ``session``.

        Raises InvalidTransition when the edge is not in the table,
        GuardFailure when its guard is false, and ValidationError when the
        action pre-check fails. Nothing is written when any of them is raised.
        """
        current = referral.status
        target_status = self._resolve(current, target)

        edges = self.transitions.get(current, {})
        if target_status not in edges:
            raise InvalidTransition(current.value, target_status.value)

        guard = edges[target_status]
        if not self._guards[guard](referral, context):
            raise GuardFailure(guard.value)

        action = ACTION_FOR_TARGET.get(target_status)
        if action:
            data = referral.as_dict()
            if context.options.get("scheduled_date") is not None:
                data["scheduled_date"] = context.options["scheduled_date"]
            check = self.validator.validate_for_action(data, action)
            if not check.is_valid:
                raise ValidationError(check)

        now = self.clock()
        self._apply(referral, target_status, context, now)

        history = StatusHistory(
            referral_id=referral.id,
            previous_status=current,
            new_status=target_status,
            reason=context.notes or f"Status changed to {target_status.value}",
            changed_by=context.actor,
            changed_at=self.next_history_time(session, referral.id, now),
        )
        session.add(history)

        logger.info(
            f"Referral {referral.referral_number}: {current.value} -> {target_status.value}"
        )
        return history

    @staticmethod
    def next_history_time(session: Session, referral_id: int, now: datetime) -> datetime:
        """Stamp for a new history row, strictly after the last one."""
        last = (
            session.query(func.max(StatusHistory.changed_at))
            .filter(StatusHistory.referral_id == referral_id)
            .scalar()
        )
        if last is not None and now <= last:
            return last + HISTORY_TICK
        return now

    def _resolve(self, current: ReferralStatus, target: Union[ReferralStatus, str]) -> ReferralStatus:
        if isinstance(target, ReferralStatus):
            return target
        try:
            return ReferralStatus(str(target).strip().lower())
        except ValueError:
            raise InvalidTransition(current.value, str(target)) from None

    def _apply(
        self,
        referral: Referral,
        target: ReferralStatus,
        context: TransitionContext,
        now: datetime,
    ) -> None:
        options = context.options
        referral.status = target
        referral.updated_at = now

        if target == ReferralStatus.SENT:
            referral.sent_at = now
            referral.letter_sent = True
        elif target == ReferralStatus.SCHEDULED:
            referral.scheduled_at = now
            scheduled = as_datetime(options.get("scheduled_date"))
            if scheduled is not None:
                referral.scheduled_date = scheduled
        elif target == ReferralStatus.COMPLETED:
            referral.completed_at = now
            referral.completed_date = as_datetime(options.get("completed_date")) or now
            outcome = options.get("outcome_notes")
            if outcome:
                referral.outcome_notes = outcome
                referral.outcome_received = True
            if options.get("follow_up_instructions"):
                referral.follow_up_instructions = options["follow_up_instructions"]
        elif target == ReferralStatus.CANCELLED:
            referral.cancelled_at = now
            referral.cancellation_reason = options.get("cancellation_reason") or context.notes

    # =========================================================================
    # GUARDS
    # =========================================================================

    def _guard_complete(self, referral: Referral, context: TransitionContext) -> bool:
        has_fields = all(
            [
                referral.patient_id,
                referral.provider_id,
                referral.specialty_type,
                referral.referral_reason,
            ]
        )
        if not has_fields:
            return False
        if referral.authorization_required:
            return referral.authorization_status == AuthorizationStatus.APPROVED
        return True

    def _guard_ready_to_send(self, referral: Referral, context: TransitionContext) -> bool:
        return self._guard_complete(referral, context) and bool(
            referral.specialist_id or referral.specialty_type
        )

    def _guard_has_schedule_info(self, referral: Referral, context: TransitionContext) -> bool:
        supplied = as_datetime(context.options.get("scheduled_date"))
        return supplied is not None or referral.scheduled_date is not None

    def _guard_has_scheduled_date(self, referral: Referral, context: TransitionContext) -> bool:
        return (
            referral.scheduled_date is not None
            and referral.status == ReferralStatus.SCHEDULED
        )

    def _guard_unscheduled_too_long(self, referral: Referral, context: TransitionContext) -> bool:
        if referral.sent_at is None:
            return False
        return self.clock() - referral.sent_at >= timedelta(days=self.expiration_days)

    def _guard_reactivation_allowed(self, referral: Referral, context: TransitionContext) -> bool:
        return referral.status == ReferralStatus.CANCELLED

    def _guard_resend_allowed(self, referral: Referral, context: TransitionContext) -> bool:
        return referral.status == ReferralStatus.EXPIRED
