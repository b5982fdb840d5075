"""
Automated post-transition action pipeline.

After a transition commits, the actions registered for the new status run
in order against a detached snapshot of the referral. Every action gets its
own short transaction and a capped number of attempts. A failure is logged,
recorded as an AUTOMATED_ACTION_FAILED workflow event and then skipped, so
one broken action never blocks the rest or the transition itself.

Status actions:
- pending: authorization check, insurance eligibility, priority queue
- sent: letter, notifications, follow-up task, specialist metric
- scheduled: confirmation, calendar event, provider notice
- completed: outcome request, quality metrics, follow-up, rating
- cancelled: notice, metrics, authorization release
- expired: notice, alternative specialists, metrics
"""

import enum
import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session, sessionmaker

from referral_workflow.errors import ActionFailure
from referral_workflow.models import (
    Authorization,
    AuthorizationStatus,
    FollowUpTask,
    Patient,
    Provider,
    QualityMetric,
    QueueItem,
    QueueItemStatus,
    Referral,
    ReferralStatus,
    Specialist,
    SpecialistMetric,
    SpecialistRating,
    UrgencyLevel,
    WorkQueue,
    WorkflowEventType,
    session_scope,
    utcnow,
)
from referral_workflow.services.audit_service import AuditTrail
from referral_workflow.services.ports import (
    Directory,
    LetterRenderer,
    Notification,
    Notifier,
    ReferralSnapshot,
)
from referral_workflow.services.urgency_monitor import DEFAULT_POLICIES, UrgencyPolicy

logger = logging.getLogger(__name__)

# Specialties that always need payer pre-approval once pending
ALWAYS_REQUIRE_AUTHORIZATION = frozenset({"surgery", "mri", "ct_scan", "specialist_procedure"})


class AutomatedAction(enum.Enum):
    """Best-effort side effects triggered by entering a status."""

    CHECK_AUTHORIZATION_REQUIREMENT = "check_authorization_requirement"
    VALIDATE_INSURANCE_ELIGIBILITY = "validate_insurance_eligibility"
    ASSIGN_TO_PRIORITY_QUEUE = "assign_to_priority_queue"
    GENERATE_LETTER = "generate_letter"
    SEND_NOTIFICATIONS = "send_notifications"
    SCHEDULE_FOLLOW_UP = "schedule_follow_up"
    UPDATE_SPECIALIST_RECEIVED_METRIC = "update_specialist_received_metric"
    SEND_APPOINTMENT_CONFIRMATION = "send_appointment_confirmation"
    CREATE_CALENDAR_EVENT = "create_calendar_event"
    NOTIFY_PROVIDER = "notify_provider"
    REQUEST_OUTCOME_REPORT = "request_outcome_report"
    UPDATE_QUALITY_METRICS = "update_quality_metrics"
    PROCESS_FOLLOW_UP = "process_follow_up"
    UPDATE_SPECIALIST_RATING = "update_specialist_rating"
    NOTIFY_CANCELLATION = "notify_cancellation"
    UPDATE_METRICS = "update_metrics"
    PROCESS_REFUNDS = "process_refunds"
    NOTIFY_EXPIRATION = "notify_expiration"
    SUGGEST_ALTERNATIVES = "suggest_alternatives"


StatusActions = Mapping[ReferralStatus, tuple[AutomatedAction, ...]]


def build_status_actions() -> StatusActions:
    """Build the read-only status -> ordered actions registry."""
    A = AutomatedAction
    return MappingProxyType(
        {
            ReferralStatus.DRAFT: (),
            ReferralStatus.PENDING: (
                A.CHECK_AUTHORIZATION_REQUIREMENT,
                A.VALIDATE_INSURANCE_ELIGIBILITY,
                A.ASSIGN_TO_PRIORITY_QUEUE,
            ),
            ReferralStatus.SENT: (
                A.GENERATE_LETTER,
                A.SEND_NOTIFICATIONS,
                A.SCHEDULE_FOLLOW_UP,
                A.UPDATE_SPECIALIST_RECEIVED_METRIC,
            ),
            ReferralStatus.SCHEDULED: (
                A.SEND_APPOINTMENT_CONFIRMATION,
                A.CREATE_CALENDAR_EVENT,
                A.NOTIFY_PROVIDER,
            ),
            ReferralStatus.COMPLETED: (
                A.REQUEST_OUTCOME_REPORT,
                A.UPDATE_QUALITY_METRICS,
                A.PROCESS_FOLLOW_UP,
                A.UPDATE_SPECIALIST_RATING,
            ),
            ReferralStatus.CANCELLED: (
                A.NOTIFY_CANCELLATION,
                A.UPDATE_METRICS,
                A.PROCESS_REFUNDS,
            ),
            ReferralStatus.EXPIRED: (
                A.NOTIFY_EXPIRATION,
                A.SUGGEST_ALTERNATIVES,
                A.UPDATE_METRICS,
            ),
        }
    )


STATUS_ACTIONS = build_status_actions()


@dataclass
class ActionContext:
    """Everything one action attempt may touch."""

    referral: ReferralSnapshot
    session: Session
    actor: Optional[str]
    options: Mapping[str, Any]
    now: datetime
    outputs: dict[str, Any]


@dataclass
class PipelineReport:
    """Outcome of one pipeline run."""

    referral_id: int
    status: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ActionPipeline:
    """
    Runs the automated actions registered for a status.

    Args:
        session_factory: Source of the per-action sessions
        notifier: Outbound notifications
        letters: Letter renderer
        directory: Read-only directory lookups
        audit: Receives AUTOMATED_ACTION_FAILED workflow events
        status_actions: Status -> ordered actions registry
        workers: Thread pool size; 0 runs every pipeline inline
        max_attempts: Attempts per action before it is recorded as failed
        follow_up_days: Offset for follow-up tasks
        letter_template: Template id passed to the renderer
        policies: Urgency policies, used for queue priority
        clock: Returns the current naive-UTC time
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        letters: LetterRenderer,
        directory: Directory,
        audit: AuditTrail,
        status_actions: StatusActions = STATUS_ACTIONS,
        workers: int = 4,
        max_attempts: int = 2,
        follow_up_days: int = 14,
        letter_template: str = "standard_referral",
        policies: Mapping[UrgencyLevel, UrgencyPolicy] = DEFAULT_POLICIES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.letters = letters
        self.directory = directory
        self.audit = audit
        self.status_actions = status_actions
        self.max_attempts = max(1, max_attempts)
        self.follow_up_days = follow_up_days
        self.letter_template = letter_template
        self.policies = policies
        self.clock = clock

        self._executor: Optional[ThreadPoolExecutor] = None
        if workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="referral-actions"
            )

        A = AutomatedAction
        self._handlers: Mapping[AutomatedAction, Callable[[ActionContext], None]] = (
            MappingProxyType(
                {
                    A.CHECK_AUTHORIZATION_REQUIREMENT: self._check_authorization_requirement,
                    A.VALIDATE_INSURANCE_ELIGIBILITY: self._validate_insurance_eligibility,
                    A.ASSIGN_TO_PRIORITY_QUEUE: self._assign_to_priority_queue,
                    A.GENERATE_LETTER: self._generate_letter,
                    A.SEND_NOTIFICATIONS: self._send_notifications,
                    A.SCHEDULE_FOLLOW_UP: self._schedule_follow_up,
                    A.UPDATE_SPECIALIST_RECEIVED_METRIC: self._update_specialist_received_metric,
                    A.SEND_APPOINTMENT_CONFIRMATION: self._send_appointment_confirmation,
                    A.CREATE_CALENDAR_EVENT: self._create_calendar_event,
                    A.NOTIFY_PROVIDER: self._notify_provider,
                    A.REQUEST_OUTCOME_REPORT: self._request_outcome_report,
                    A.UPDATE_QUALITY_METRICS: self._update_quality_metrics,
                    A.PROCESS_FOLLOW_UP: self._process_follow_up,
                    A.UPDATE_SPECIALIST_RATING: self._update_specialist_rating,
                    A.NOTIFY_CANCELLATION: self._notify_cancellation,
                    A.UPDATE_METRICS: self._update_metrics,
                    A.PROCESS_REFUNDS: self._process_refunds,
                    A.NOTIFY_EXPIRATION: self._notify_expiration,
                    A.SUGGEST_ALTERNATIVES: self._suggest_alternatives,
                }
            )
        )
        missing = set(AutomatedAction) - set(self._handlers)
        if missing:
            raise ValueError(f"No handler for actions: {sorted(a.value for a in missing)}")

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def dispatch(
        self,
        referral: ReferralSnapshot,
        actor: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> "Future[PipelineReport]":
        """Queue the actions for the snapshot's status on the worker pool."""
        if self._executor is None:
            future: Future[PipelineReport] = Future()
            future.set_result(self.run(referral, actor, options))
            return future
        return self._executor.submit(self.run, referral, actor, options)

    def run(
        self,
        referral: ReferralSnapshot,
        actor: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> PipelineReport:
        """Run the actions for the snapshot's status in order."""
        status = ReferralStatus(referral.status)
        report = PipelineReport(referral_id=referral.id, status=status.value)
        options = dict(options or {})

        for action in self.status_actions.get(status, ()):
            self._run_action(action, referral, actor, options, report)

        if report.failed:
            logger.warning(
                f"Referral {referral.referral_number} {status.value} pipeline: "
                f"{len(report.failed)} action(s) failed"
            )
        return report

    def _run_action(
        self,
        action: AutomatedAction,
        referral: ReferralSnapshot,
        actor: Optional[str],
        options: Mapping[str, Any],
        report: PipelineReport,
    ) -> None:
        handler = self._handlers[action]
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            report.attempts[action.value] = attempt
            try:
                with session_scope(self.session_factory) as session:
                    handler(
                        ActionContext(
                            referral=referral,
                            session=session,
                            actor=actor,
                            options=options,
                            now=self.clock(),
                            outputs=report.outputs,
                        )
                    )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    f"Action {action.value} failed for referral {referral.id} "
                    f"(attempt {attempt}/{self.max_attempts}): {exc}"
                )
                continue
            report.succeeded.append(action.value)
            return

        logger.error(f"Action {action.value} gave up for referral {referral.id}: {last_error}")
        report.failed[action.value] = str(last_error)
        self.audit.workflow_event(
            referral.id,
            WorkflowEventType.AUTOMATED_ACTION_FAILED,
            {
                "action": action.value,
                "error": str(last_error),
                "attempts": self.max_attempts,
            },
            created_by=actor,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool, optionally waiting for queued pipelines."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    # =========================================================================
    # PENDING
    # =========================================================================

    def _check_authorization_requirement(self, ctx: ActionContext) -> None:
        specialty = ctx.referral.specialty_type.strip().lower()
        if specialty not in ALWAYS_REQUIRE_AUTHORIZATION or ctx.referral.authorization_required:
            return

        referral = ctx.session.get(Referral, ctx.referral.id)
        referral.authorization_required = True
        if referral.authorization_status is None:
            referral.authorization_status = AuthorizationStatus.PENDING

        open_request = (
            ctx.session.query(Authorization.id)
            .filter(
                Authorization.referral_id == referral.id,
                Authorization.status != AuthorizationStatus.CANCELLED,
            )
            .first()
        )
        if open_request is None:
            ctx.session.add(
                Authorization(
                    referral_id=referral.id,
                    status=AuthorizationStatus.PENDING,
                    request_date=ctx.now.date(),
                    clinical_justification=referral.referral_reason,
                    requested_services=list(referral.cpt_codes or []),
                    submitted_method="automated",
                )
            )
        logger.info(f"Referral {referral.referral_number} now requires authorization")

    def _validate_insurance_eligibility(self, ctx: ActionContext) -> None:
        if not ctx.referral.authorization_required:
            return
        if not self.directory.has_active_insurance(ctx.referral.patient_id, ctx.now.date()):
            raise ActionFailure(
                AutomatedAction.VALIDATE_INSURANCE_ELIGIBILITY.value,
                f"No active insurance on file for patient {ctx.referral.patient_id}",
            )

    def _assign_to_priority_queue(self, ctx: ActionContext) -> None:
        policy = self.policies[UrgencyLevel(ctx.referral.urgency_level)]
        queue = (
            ctx.session.query(WorkQueue)
            .filter(
                WorkQueue.priority_level == policy.priority_level,
                WorkQueue.is_active == True,
            )
            .first()
        )
        if queue is None:
            raise ActionFailure(
                AutomatedAction.ASSIGN_TO_PRIORITY_QUEUE.value,
                f"Priority {policy.priority_level} queue not found. Run seed_queues() first.",
            )

        already_queued = (
            ctx.session.query(QueueItem.id)
            .filter(
                QueueItem.referral_id == ctx.referral.id,
                QueueItem.status.in_([QueueItemStatus.PENDING, QueueItemStatus.IN_PROGRESS]),
            )
            .first()
        )
        if already_queued:
            return

        due_at = None
        if queue.sla_minutes:
            due_at = ctx.now + timedelta(minutes=queue.sla_minutes)

        ctx.session.add(
            QueueItem(
                queue_id=queue.id,
                referral_id=ctx.referral.id,
                status=QueueItemStatus.PENDING,
                entered_queue_at=ctx.now,
                due_at=due_at,
            )
        )
        ctx.outputs["queue"] = queue.name
        logger.info(f"Referral {ctx.referral.referral_number} queued on {queue.name}")

    # =========================================================================
    # SENT
    # =========================================================================

    def _generate_letter(self, ctx: ActionContext) -> None:
        template = ctx.options.get("letter_template") or self.letter_template
        letter = self.letters.render(ctx.referral, template)
        ctx.outputs["letter"] = letter

        referral = ctx.session.get(Referral, ctx.referral.id)
        referral.letter_generated = True

    def _send_notifications(self, ctx: ActionContext) -> None:
        recipient = self._specialist_contact(ctx) or f"specialty:{ctx.referral.specialty_type}"
        self.notifier.send(
            Notification(
                kind="referral_sent",
                recipient=recipient,
                subject=f"New {ctx.referral.urgency_level} referral {ctx.referral.referral_number}",
                body=ctx.outputs.get("letter", ""),
                referral_id=ctx.referral.id,
            )
        )

    def _schedule_follow_up(self, ctx: ActionContext) -> None:
        ctx.session.add(
            FollowUpTask(
                referral_id=ctx.referral.id,
                task_type="sent_follow_up",
                due_at=ctx.now + timedelta(days=self.follow_up_days),
                instructions="Confirm the specialist has scheduled the appointment",
                created_by=ctx.actor,
            )
        )

    def _update_specialist_received_metric(self, ctx: ActionContext) -> None:
        if ctx.referral.specialist_id:
            self._bump_specialist_metric(ctx, SpecialistMetric.referrals_received)

    # =========================================================================
    # SCHEDULED
    # =========================================================================

    def _send_appointment_confirmation(self, ctx: ActionContext) -> None:
        patient = ctx.session.get(Patient, ctx.referral.patient_id)
        recipient = (patient.email if patient else None) or ctx.referral.patient_id
        self.notifier.send(
            Notification(
                kind="appointment_confirmation",
                recipient=recipient,
                subject=f"Appointment scheduled for referral {ctx.referral.referral_number}",
                referral_id=ctx.referral.id,
                metadata={"scheduled_date": _iso(ctx.referral.scheduled_date)},
            )
        )

    def _create_calendar_event(self, ctx: ActionContext) -> None:
        if ctx.referral.scheduled_date is None:
            raise ActionFailure(
                AutomatedAction.CREATE_CALENDAR_EVENT.value, "Referral has no scheduled date"
            )
        self.notifier.send(
            Notification(
                kind="calendar_event",
                recipient=self._specialist_contact(ctx) or ctx.referral.provider_id,
                subject=f"{ctx.referral.specialty_type} appointment ({ctx.referral.referral_number})",
                referral_id=ctx.referral.id,
                metadata={
                    "start": _iso(ctx.referral.scheduled_date),
                    "patient_id": ctx.referral.patient_id,
                },
            )
        )

    def _notify_provider(self, ctx: ActionContext) -> None:
        self.notifier.send(
            Notification(
                kind="provider_update",
                recipient=self._provider_contact(ctx),
                subject=(
                    f"Referral {ctx.referral.referral_number} is now {ctx.referral.status}"
                ),
                referral_id=ctx.referral.id,
                metadata={"scheduled_date": _iso(ctx.referral.scheduled_date)},
            )
        )

    # =========================================================================
    # COMPLETED
    # =========================================================================

    def _request_outcome_report(self, ctx: ActionContext) -> None:
        referral = ctx.session.get(Referral, ctx.referral.id)
        if referral.outcome_received:
            return
        self.notifier.send(
            Notification(
                kind="outcome_report_request",
                recipient=self._specialist_contact(ctx) or ctx.referral.provider_id,
                subject=f"Outcome report requested for referral {ctx.referral.referral_number}",
                referral_id=ctx.referral.id,
            )
        )

    def _update_quality_metrics(self, ctx: ActionContext) -> None:
        referral = ctx.session.get(Referral, ctx.referral.id)
        finished = referral.completed_at or ctx.now
        cycle_days = math.ceil((finished - referral.created_at).total_seconds() / 86400)
        ctx.session.add(
            QualityMetric(
                referral_id=referral.id,
                total_cycle_days=max(cycle_days, 0),
                appointment_kept=True,
                outcome_received=bool(referral.outcome_received),
                recorded_at=ctx.now,
            )
        )
        if ctx.referral.specialist_id:
            self._bump_specialist_metric(ctx, SpecialistMetric.referrals_completed)

    def _process_follow_up(self, ctx: ActionContext) -> None:
        if not ctx.referral.follow_up_required:
            return
        ctx.session.add(
            FollowUpTask(
                referral_id=ctx.referral.id,
                task_type="post_completion_follow_up",
                due_at=ctx.now + timedelta(days=self.follow_up_days),
                instructions=ctx.referral.follow_up_instructions,
                created_by=ctx.actor,
            )
        )

    def _update_specialist_rating(self, ctx: ActionContext) -> None:
        specialist_id = ctx.referral.specialist_id
        if not specialist_id:
            return

        values: dict[str, Any] = {
            "completed_referrals": SpecialistRating.completed_referrals + 1,
            "updated_at": ctx.now,
        }
        score = ctx.options.get("patient_satisfaction_score")
        if score is not None:
            score = float(score)
            rated = SpecialistRating.rated_referrals
            values["patient_satisfaction_score"] = (
                func.coalesce(SpecialistRating.patient_satisfaction_score, 0.0) * rated + score
            ) / (rated + 1)
            values["rated_referrals"] = rated + 1

        bumped = ctx.session.execute(
            update(SpecialistRating)
            .where(SpecialistRating.specialist_id == specialist_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            ctx.session.add(
                SpecialistRating(
                    specialist_id=specialist_id,
                    completed_referrals=1,
                    rated_referrals=1 if score is not None else 0,
                    patient_satisfaction_score=score,
                    updated_at=ctx.now,
                )
            )

    # =========================================================================
    # CANCELLED / EXPIRED
    # =========================================================================

    def _notify_cancellation(self, ctx: ActionContext) -> None:
        recipients = [self._provider_contact(ctx)]
        specialist = self._specialist_contact(ctx)
        if specialist:
            recipients.append(specialist)
        for recipient in recipients:
            self.notifier.send(
                Notification(
                    kind="referral_cancelled",
                    recipient=recipient,
                    subject=f"Referral {ctx.referral.referral_number} was cancelled",
                    referral_id=ctx.referral.id,
                )
            )

    def _update_metrics(self, ctx: ActionContext) -> None:
        ctx.session.query(QueueItem).filter(
            QueueItem.referral_id == ctx.referral.id,
            QueueItem.status.in_([QueueItemStatus.PENDING, QueueItemStatus.IN_PROGRESS]),
        ).update(
            {QueueItem.status: QueueItemStatus.COMPLETED, QueueItem.completed_at: ctx.now},
            synchronize_session=False,
        )

        if not ctx.referral.specialist_id:
            return
        if ctx.referral.status == ReferralStatus.EXPIRED.value:
            self._bump_specialist_metric(ctx, SpecialistMetric.referrals_expired)
        else:
            self._bump_specialist_metric(ctx, SpecialistMetric.referrals_cancelled)

    def _process_refunds(self, ctx: ActionContext) -> None:
        """Release authorizations the cancelled referral will not use."""
        released = (
            ctx.session.query(Authorization)
            .filter(
                Authorization.referral_id == ctx.referral.id,
                Authorization.status.in_(
                    [AuthorizationStatus.PENDING, AuthorizationStatus.APPROVED]
                ),
            )
            .update({Authorization.status: AuthorizationStatus.CANCELLED}, synchronize_session=False)
        )
        if not released:
            return

        # A reactivated referral must obtain a fresh approval
        referral = ctx.session.get(Referral, ctx.referral.id)
        referral.authorization_status = AuthorizationStatus.CANCELLED
        referral.updated_at = ctx.now
        logger.info(f"Released {released} authorization(s) for referral {ctx.referral.id}")

    def _notify_expiration(self, ctx: ActionContext) -> None:
        self.notifier.send(
            Notification(
                kind="referral_expired",
                recipient=self._provider_contact(ctx),
                subject=(
                    f"Referral {ctx.referral.referral_number} expired without being scheduled"
                ),
                referral_id=ctx.referral.id,
            )
        )

    def _suggest_alternatives(self, ctx: ActionContext) -> None:
        alternatives = self.directory.specialists_for_specialty(
            ctx.referral.specialty_type, exclude_id=ctx.referral.specialist_id
        )
        ctx.outputs["alternatives"] = [s.id for s in alternatives]
        if not alternatives:
            return
        self.notifier.send(
            Notification(
                kind="alternative_specialists",
                recipient=self._provider_contact(ctx),
                subject=f"Alternative specialists for referral {ctx.referral.referral_number}",
                body="\n".join(
                    f"{s.name} ({s.practice_name or s.specialty_primary})" for s in alternatives
                ),
                referral_id=ctx.referral.id,
                metadata={"specialist_ids": [s.id for s in alternatives]},
            )
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _bump_specialist_metric(self, ctx: ActionContext, column) -> None:
        """Increment today's counter for the referral's specialist in SQL."""
        today = ctx.now.date()
        bumped = ctx.session.execute(
            update(SpecialistMetric)
            .where(
                SpecialistMetric.specialist_id == ctx.referral.specialist_id,
                SpecialistMetric.metric_date == today,
            )
            .values({column: column + 1})
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            metric = SpecialistMetric(
                specialist_id=ctx.referral.specialist_id,
                metric_date=today,
                referrals_received=0,
                referrals_completed=0,
                referrals_cancelled=0,
                referrals_expired=0,
            )
            setattr(metric, column.key, 1)
            ctx.session.add(metric)

    def _specialist_contact(self, ctx: ActionContext) -> Optional[str]:
        if not ctx.referral.specialist_id:
            return None
        specialist = ctx.session.get(Specialist, ctx.referral.specialist_id)
        if specialist is None:
            return ctx.referral.specialist_id
        return specialist.email or specialist.fax or specialist.id

    def _provider_contact(self, ctx: ActionContext) -> str:
        provider = ctx.session.get(Provider, ctx.referral.provider_id)
        if provider is not None and provider.email:
            return provider.email
        return ctx.referral.provider_id


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
