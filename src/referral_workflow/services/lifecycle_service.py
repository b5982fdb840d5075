"""
Referral lifecycle service.

This is the entry point used by the API and CLI. It composes the pieces of
the workflow:
1. ReferralValidator - gates creation and per-action pre-checks
2. ReferralStateMachine - guarded status transitions
3. UrgencyMonitor - SLA escalation after each transition
4. ActionPipeline - best-effort automated actions after each transition
5. AuditTrail - records every mutating call, including rejected ones
"""

import logging
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from referral_workflow.config import Settings, get_settings
from referral_workflow.errors import (
    GuardFailure,
    InvalidTransition,
    NotFoundError,
    PersistenceError,
    ReferralWorkflowError,
    ValidationError,
)
from referral_workflow.models import (
    AppointmentType,
    AuditAction,
    Authorization,
    AuthorizationStatus,
    Escalation,
    Referral,
    ReferralStatus,
    SessionLocal,
    StatusHistory,
    UrgencyLevel,
    WorkQueue,
    WorkflowEventType,
    utcnow,
)
from referral_workflow.services.action_pipeline import ActionPipeline
from referral_workflow.services.audit_service import AuditTrail, SqlAuditSink
from referral_workflow.services.directory_service import SqlDirectory
from referral_workflow.services.notification_service import PlainLetterRenderer, get_notifier
from referral_workflow.services.ports import (
    LetterRenderer,
    Notifier,
    ReferralFilters,
    ReferralPage,
    ReferralSnapshot,
    ReferralStats,
    ReferralStore,
)
from referral_workflow.services.referral_store import SqlReferralStore
from referral_workflow.services.state_machine import ReferralStateMachine, TransitionContext
from referral_workflow.services.urgency_monitor import UrgencyMonitor
from referral_workflow.services.validation_service import (
    ReferralValidator,
    ValidationResult,
    as_datetime,
)

logger = logging.getLogger(__name__)

CONCURRENT_MODIFICATION = "concurrent_modification"
MAX_PAGE_SIZE = 200

_STATUS_VALUES = frozenset(s.value for s in ReferralStatus)
_URGENCY_VALUES = frozenset(u.value for u in UrgencyLevel)

# Caller-settable fields on creation
REFERRAL_FIELDS = (
    "patient_id",
    "provider_id",
    "specialist_id",
    "encounter_id",
    "specialty_type",
    "referral_reason",
    "clinical_notes",
    "stat_justification",
    "icd_codes",
    "cpt_codes",
    "urgency_level",
    "appointment_type",
    "expected_duration",
    "preferred_appointment_time",
    "authorization_required",
    "authorization_number",
    "scheduled_date",
    "follow_up_required",
    "follow_up_instructions",
)


class ReferralLifecycleService:
    """
    Creates referrals and drives them through their lifecycle.

    Handles:
    - Referral creation with validation and numbering
    - Guarded status transitions with optimistic-concurrency retry
    - Authorization requests and decisions
    - Manual and SLA-driven escalation
    - Referral listings and statistics
    """

    def __init__(
        self,
        store: ReferralStore,
        validator: ReferralValidator,
        state_machine: ReferralStateMachine,
        pipeline: ActionPipeline,
        monitor: UrgencyMonitor,
        audit: AuditTrail,
        transition_max_attempts: int = 2,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.validator = validator
        self.state_machine = state_machine
        self.pipeline = pipeline
        self.monitor = monitor
        self.audit = audit
        self.transition_max_attempts = max(1, transition_max_attempts)
        self.clock = clock

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_referral(
        self,
        data: Mapping[str, Any],
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Referral:
        """
        Validate and store a new draft referral.

        Raises ValidationError when the data has blocking errors. Warnings
        and compliance issues do not block creation.
        """
        payload = {key: data.get(key) for key in REFERRAL_FIELDS if key in data}
        payload["status"] = ReferralStatus.DRAFT.value

        result = self.validator.validate(payload, "create")
        if not result.is_valid:
            logger.info(f"Rejected referral for patient {payload.get('patient_id')}: {result.errors}")
            raise ValidationError(result)

        now = self.clock()
        try:
            with self.store.transaction() as session:
                referral = self._build_referral(payload, actor, now)
                referral.referral_number = self.store.next_referral_number(session)
                self.store.add(session, referral)

                session.add(
                    StatusHistory(
                        referral_id=referral.id,
                        previous_status=None,
                        new_status=ReferralStatus.DRAFT,
                        reason="Referral created",
                        changed_by=actor,
                        changed_at=now,
                    )
                )
                authorization = None
                if referral.authorization_required and referral.authorization_status is None:
                    authorization = self._open_authorization(session, referral, now)
        except SQLAlchemyError as exc:
            logger.exception("Failed to store referral")
            raise PersistenceError("create referral") from exc

        logger.info(f"Created referral {referral.referral_number} (id={referral.id})")
        self.audit.record(
            AuditAction.REFERRAL_CREATED,
            "referral",
            referral.id,
            new_values={
                "referral_number": referral.referral_number,
                "status": referral.status,
                "patient_id": referral.patient_id,
                "provider_id": referral.provider_id,
                "specialty_type": referral.specialty_type,
                "urgency_level": referral.urgency_level,
                "warnings": result.warnings,
                "compliance_issues": result.compliance_issues,
            },
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if authorization is not None:
            self.audit.record(
                AuditAction.AUTHORIZATION_REQUESTED,
                "authorization",
                authorization.id,
                new_values={"referral_id": referral.id, "status": authorization.status},
                actor=actor,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return referral

    def _build_referral(self, payload: dict[str, Any], actor: Optional[str], now) -> Referral:
        referral = Referral(
            patient_id=payload["patient_id"],
            provider_id=payload["provider_id"],
            specialist_id=payload.get("specialist_id"),
            encounter_id=payload.get("encounter_id"),
            specialty_type=payload["specialty_type"],
            referral_reason=payload["referral_reason"],
            clinical_notes=payload.get("clinical_notes"),
            stat_justification=payload.get("stat_justification"),
            icd_codes=list(payload.get("icd_codes") or []),
            cpt_codes=list(payload.get("cpt_codes") or []),
            urgency_level=UrgencyLevel(_value(payload.get("urgency_level")) or "routine"),
            appointment_type=AppointmentType(
                _value(payload.get("appointment_type")) or "consultation"
            ),
            expected_duration=payload.get("expected_duration"),
            preferred_appointment_time=payload.get("preferred_appointment_time"),
            status=ReferralStatus.DRAFT,
            authorization_required=bool(payload.get("authorization_required")),
            authorization_number=payload.get("authorization_number"),
            scheduled_date=as_datetime(payload.get("scheduled_date")),
            follow_up_required=payload.get("follow_up_required", True) is not False,
            follow_up_instructions=payload.get("follow_up_instructions"),
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        # A validated authorization number means the payer already approved
        if referral.authorization_required and referral.authorization_number:
            referral.authorization_status = AuthorizationStatus.APPROVED
        return referral

    def _open_authorization(self, session: Session, referral: Referral, now) -> Authorization:
        authorization = Authorization(
            referral_id=referral.id,
            status=AuthorizationStatus.PENDING,
            request_date=now.date(),
            requested_services=list(referral.cpt_codes or []),
            clinical_justification=referral.clinical_notes or referral.referral_reason,
            submitted_method="electronic",
        )
        session.add(authorization)
        referral.authorization_status = AuthorizationStatus.PENDING
        session.flush()
        return authorization

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def transition(
        self,
        referral_id: int,
        target_status: Union[ReferralStatus, str],
        notes: Optional[str] = None,
        actor: Optional[str] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Referral:
        """
        Move a referral to ``target_status``.

        The guard, pre-check and write happen in one transaction. A stale
        concurrent write is retried against a fresh copy, up to
        transition_max_attempts; after that it fails as
        GuardFailure("concurrent_modification"). The SLA check and the
        automated actions run only after the commit.
        """
        context = TransitionContext(actor=actor, notes=notes, options=dict(options or {}))
        target_name = _value(target_status)

        for attempt in range(1, self.transition_max_attempts + 1):
            try:
                with self.store.transaction() as session:
                    referral = self.store.get_referral(session, referral_id, for_update=True)
                    if referral is None:
                        raise NotFoundError("Referral", referral_id)
                    previous = referral.status
                    self.state_machine.attempt_transition(session, referral, target_status, context)
                break
            except StaleDataError:
                logger.warning(
                    f"Referral {referral_id} changed concurrently "
                    f"(attempt {attempt}/{self.transition_max_attempts})"
                )
                if attempt == self.transition_max_attempts:
                    error = GuardFailure(CONCURRENT_MODIFICATION)
                    self._audit_rejection(referral_id, target_name, error, actor)
                    raise error from None
            except (InvalidTransition, GuardFailure, ValidationError) as error:
                self._audit_rejection(referral_id, target_name, error, actor)
                raise
            except SQLAlchemyError as exc:
                logger.exception(f"Failed to transition referral {referral_id}")
                raise PersistenceError("update referral status") from exc

        self.audit.record(
            AuditAction.REFERRAL_STATUS_UPDATED,
            "referral",
            referral.id,
            old_values={"status": previous},
            new_values={"status": referral.status, "notes": notes},
            actor=actor,
        )
        self.audit.workflow_event(
            referral.id,
            WorkflowEventType.STATUS_CHANGE,
            {
                "oldStatus": previous.value,
                "newStatus": referral.status.value,
                "options": {k: str(v) for k, v in context.options.items()},
            },
            created_by=actor,
        )

        return self._after_transition(referral, actor, context.options)

    def _after_transition(
        self, referral: Referral, actor: Optional[str], options: Mapping[str, Any]
    ) -> Referral:
        try:
            if self.monitor.evaluate(referral.id) is not None:
                referral = self.get_referral(referral.id)
        except Exception:
            logger.exception(f"SLA check failed after transition of referral {referral.id}")

        snapshot = ReferralSnapshot.from_model(referral)
        try:
            self.pipeline.dispatch(snapshot, actor, options)
        except RuntimeError:
            logger.exception(f"Could not dispatch automated actions for referral {referral.id}")
        return referral

    def _audit_rejection(
        self,
        referral_id: int,
        target: Optional[str],
        error: ReferralWorkflowError,
        actor: Optional[str],
    ) -> None:
        self.audit.record(
            AuditAction.TRANSITION_REJECTED,
            "referral",
            referral_id,
            new_values={"target_status": target, "error": error.kind, "detail": error.detail},
            actor=actor,
        )

    def validate_for_action(self, referral_id: int, action: str) -> ValidationResult:
        """Run the pre-check for a workflow action against the stored referral."""
        referral = self.get_referral(referral_id)
        return self.validator.validate_for_action(referral.as_dict(), action)

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def request_authorization(
        self,
        referral_id: int,
        actor: Optional[str] = None,
        clinical_justification: Optional[str] = None,
    ) -> Authorization:
        """
        Open an authorization request for a referral.

        A referral holds at most one non-cancelled request; an existing one
        is returned unchanged.
        """
        now = self.clock()
        try:
            with self.store.transaction() as session:
                referral = self.store.get_referral(session, referral_id, for_update=True)
                if referral is None:
                    raise NotFoundError("Referral", referral_id)

                existing = _current_authorization(session, referral.id)
                if existing is not None:
                    return existing

                referral.authorization_required = True
                referral.updated_at = now
                authorization = self._open_authorization(session, referral, now)
                if clinical_justification:
                    authorization.clinical_justification = clinical_justification
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to request authorization for referral {referral_id}")
            raise PersistenceError("request authorization") from exc

        self.audit.record(
            AuditAction.AUTHORIZATION_REQUESTED,
            "authorization",
            authorization.id,
            new_values={"referral_id": referral_id, "status": authorization.status},
            actor=actor,
        )
        return authorization

    def update_authorization(
        self,
        referral_id: int,
        status: Union[AuthorizationStatus, str],
        actor: Optional[str] = None,
        authorization_number: Optional[str] = None,
        approved_visits: Optional[int] = None,
        expiry_date=None,
    ) -> Referral:
        """
        Record a payer decision.

        Approval of a pending referral advances it to sent. If that advance
        is rejected the decision still stands and the referral stays pending.
        """
        try:
            new_status = AuthorizationStatus(_value(status))
        except ValueError:
            raise ValidationError(
                ValidationResult(errors=[f"Invalid authorization status: {status}"])
            ) from None

        now = self.clock()
        try:
            with self.store.transaction() as session:
                referral = self.store.get_referral(session, referral_id, for_update=True)
                if referral is None:
                    raise NotFoundError("Referral", referral_id)

                authorization = _current_authorization(session, referral.id)
                if authorization is None:
                    authorization = self._open_authorization(session, referral, now)

                old_status = authorization.status
                authorization.status = new_status
                authorization.updated_at = now
                if authorization_number:
                    authorization.authorization_number = authorization_number
                    referral.authorization_number = authorization_number
                if approved_visits is not None:
                    authorization.approved_visits = approved_visits
                if expiry_date is not None:
                    authorization.expiry_date = as_datetime(expiry_date).date()

                referral.authorization_required = True
                referral.authorization_status = new_status
                referral.updated_at = now
                referral_status = referral.status
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to update authorization for referral {referral_id}")
            raise PersistenceError("update authorization") from exc

        self.audit.record(
            AuditAction.AUTHORIZATION_UPDATED,
            "authorization",
            authorization.id,
            old_values={"status": old_status},
            new_values={
                "status": new_status,
                "authorization_number": authorization_number,
                "approved_visits": approved_visits,
                "expiry_date": authorization.expiry_date,
            },
            actor=actor,
        )

        if new_status == AuthorizationStatus.APPROVED and referral_status == ReferralStatus.PENDING:
            try:
                return self.transition(
                    referral_id, ReferralStatus.SENT, notes="Authorization approved", actor=actor
                )
            except ReferralWorkflowError as exc:
                logger.warning(
                    f"Referral {referral_id} stays pending after approval: {exc.detail}"
                )
        elif new_status == AuthorizationStatus.DENIED:
            logger.info(f"Authorization denied for referral {referral_id}")

        return self.get_referral(referral_id)

    # =========================================================================
    # ESCALATION
    # =========================================================================

    def escalate(
        self,
        referral_id: int,
        reason: str,
        actor: Optional[str] = None,
        level: int = 1,
        assigned_to: Optional[str] = None,
    ) -> Escalation:
        """Manually escalate a referral."""
        try:
            return self.monitor.escalate(
                referral_id, reason, actor, level=level, assigned_to=assigned_to
            )
        except SQLAlchemyError as exc:
            logger.exception(f"Failed to escalate referral {referral_id}")
            raise PersistenceError("escalate referral") from exc

    def sweep_overdue(self) -> list[Escalation]:
        """Run the SLA check over every open referral."""
        try:
            return self.monitor.sweep()
        except SQLAlchemyError as exc:
            logger.exception("SLA sweep failed")
            raise PersistenceError("sweep overdue referrals") from exc

    # =========================================================================
    # READS
    # =========================================================================

    def get_referral(self, referral_id: int) -> Referral:
        """Get a referral by ID or raise NotFoundError."""
        with self.store.transaction() as session:
            referral = self.store.get_referral(session, referral_id)
            if referral is None:
                raise NotFoundError("Referral", referral_id)
            return referral

    def get_status_history(self, referral_id: int) -> list[StatusHistory]:
        """Status history for a referral, oldest first."""
        with self.store.transaction() as session:
            if self.store.get_referral(session, referral_id) is None:
                raise NotFoundError("Referral", referral_id)
            return self.store.get_status_history(session, referral_id)

    def list_referrals(
        self,
        provider_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Union[str, Sequence[str], None] = None,
        specialty_type: Optional[str] = None,
        urgency_level: Optional[str] = None,
        created_from=None,
        created_to=None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> ReferralPage:
        """
        List referrals with optional filtering, newest first by default.

        ``status`` takes one status, a comma-separated string or a list.
        Unknown status or urgency values raise ValidationError.
        """
        if isinstance(status, str):
            status = status.split(",")
        statuses = tuple(s.strip().lower() for s in status or () if s.strip())

        errors = [f"Invalid status: {s}" for s in statuses if s not in _STATUS_VALUES]
        if urgency_level:
            urgency_level = urgency_level.strip().lower()
            if urgency_level not in _URGENCY_VALUES:
                errors.append(f"Invalid urgency level: {urgency_level}")
        if errors:
            raise ValidationError(ValidationResult(errors=errors))

        filters = ReferralFilters(
            provider_id=provider_id,
            patient_id=patient_id,
            statuses=statuses,
            specialty_type=specialty_type,
            urgency_level=urgency_level,
            created_from=as_datetime(created_from),
            created_to=as_datetime(created_to),
            search=search,
        )
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        with self.store.transaction() as session:
            return self.store.list_referrals(
                session,
                filters,
                limit=limit,
                offset=max(0, offset),
                sort_by=sort_by,
                descending=descending,
            )

    def get_statistics(self, provider_id: Optional[str] = None) -> ReferralStats:
        """Referral counts by status and urgency, optionally for one provider."""
        with self.store.transaction() as session:
            return self.store.referral_stats(session, provider_id=provider_id)

    def validate_referral(
        self, data: Mapping[str, Any], validation_type: str = "create"
    ) -> ValidationResult:
        """Validate raw referral data without storing anything."""
        return self.validator.validate(data, validation_type)

    def shutdown(self, wait: bool = True) -> None:
        self.pipeline.shutdown(wait=wait)


def _value(value: Any) -> Any:
    return getattr(value, "value", value)


def _current_authorization(session: Session, referral_id: int) -> Optional[Authorization]:
    return (
        session.query(Authorization)
        .filter(
            Authorization.referral_id == referral_id,
            Authorization.status != AuthorizationStatus.CANCELLED,
        )
        .order_by(Authorization.id.desc())
        .first()
    )


# =============================================================================
# SETUP
# =============================================================================


def seed_queues(session: Session) -> None:
    """Create the three priority work queues."""
    queues = [
        WorkQueue(
            name="referral_queue_priority_1",
            priority_level=1,
            description="STAT referrals",
            sla_minutes=120,
        ),
        WorkQueue(
            name="referral_queue_priority_2",
            priority_level=2,
            description="Urgent referrals",
            sla_minutes=1440,
        ),
        WorkQueue(
            name="referral_queue_priority_3",
            priority_level=3,
            description="Routine referrals",
            sla_minutes=4320,
        ),
    ]

    for queue in queues:
        existing = session.query(WorkQueue).filter(WorkQueue.name == queue.name).first()
        if not existing:
            session.add(queue)
            logger.info(f"Created queue: {queue.name}")

    session.commit()
    logger.info("Queue seeding complete")


def build_lifecycle_service(
    session_factory: Optional[sessionmaker] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[Notifier] = None,
    letters: Optional[LetterRenderer] = None,
    clock: Callable = utcnow,
) -> ReferralLifecycleService:
    """Wire the SQL adapters and workflow components together."""
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal

    store = SqlReferralStore(session_factory)
    directory = SqlDirectory(session_factory)
    audit = AuditTrail(SqlAuditSink(session_factory), clock=clock)
    notifier = notifier or get_notifier()
    validator = ReferralValidator(directory, clock=clock)

    state_machine = ReferralStateMachine(
        validator, expiration_days=settings.expiration_days, clock=clock
    )
    monitor = UrgencyMonitor(store, notifier, audit, clock=clock)
    pipeline = ActionPipeline(
        session_factory,
        notifier,
        letters or PlainLetterRenderer(),
        directory,
        audit,
        workers=settings.action_workers,
        max_attempts=settings.action_max_attempts,
        follow_up_days=settings.follow_up_days,
        letter_template=settings.default_letter_template,
        clock=clock,
    )
    return ReferralLifecycleService(
        store,
        validator,
        state_machine,
        pipeline,
        monitor,
        audit,
        transition_max_attempts=settings.transition_max_attempts,
        clock=clock,
    )


_service: Optional[ReferralLifecycleService] = None


def get_lifecycle_service() -> ReferralLifecycleService:
    """Process-wide service used by the API and CLI."""
    global _service
    if _service is None:
        _service = build_lifecycle_service()
    return _service
