"""
SQLAlchemy implementation of the ReferralStore port.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from referral_workflow.models import (
    DocumentSequence,
    Escalation,
    EscalationStatus,
    OPEN_STATUSES,
    QualityMetric,
    Referral,
    ReferralStatus,
    StatusHistory,
    UrgencyLevel,
    session_scope,
)
from referral_workflow.services.ports import ReferralFilters, ReferralPage, ReferralStats

logger = logging.getLogger(__name__)

REFERRAL_SEQUENCE = "referral"
REFERRAL_PREFIX = "REF"

# Columns a listing may be ordered by
SORT_COLUMNS = {
    "created_at": Referral.created_at,
    "updated_at": Referral.updated_at,
    "status": Referral.status,
    "urgency_level": Referral.urgency_level,
    "specialty_type": Referral.specialty_type,
}


class SqlReferralStore:
    """Referral persistence over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """One unit of work: commit on success, roll back on any error."""
        with session_scope(self.session_factory) as session:
            yield session

    # =========================================================================
    # REFERRALS
    # =========================================================================

    def get_referral(
        self, session: Session, referral_id: int, for_update: bool = False
    ) -> Optional[Referral]:
        """Load a referral, row-locking it when ``for_update`` is set."""
        query = session.query(Referral).filter(Referral.id == referral_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def add(self, session: Session, referral: Referral) -> Referral:
        """Stage a new referral and flush so it has an id."""
        session.add(referral)
        session.flush()
        return referral

    def next_referral_number(self, session: Session) -> str:
        """
        Allocate the next referral number, e.g. REF000042.

        The increment happens in a single UPDATE so concurrent callers
        never receive the same number.
        """
        bump = (
            update(DocumentSequence)
            .where(DocumentSequence.name == REFERRAL_SEQUENCE)
            .values(current_number=DocumentSequence.current_number + 1)
            .execution_options(synchronize_session=False)
        )
        if session.execute(bump).rowcount == 0:
            session.add(
                DocumentSequence(
                    name=REFERRAL_SEQUENCE, prefix=REFERRAL_PREFIX, current_number=0
                )
            )
            session.flush()
            session.execute(bump)

        row = session.execute(
            select(DocumentSequence.prefix, DocumentSequence.current_number).where(
                DocumentSequence.name == REFERRAL_SEQUENCE
            )
        ).one()
        return f"{row.prefix}{row.current_number:06d}"

    def open_referral_ids(self, session: Session) -> list[int]:
        """Ids of referrals that have not reached a closed status."""
        rows = (
            session.query(Referral.id)
            .filter(Referral.status.in_(OPEN_STATUSES))
            .order_by(Referral.id)
            .all()
        )
        return [row.id for row in rows]

    # =========================================================================
    # LISTINGS & STATS
    # =========================================================================

    def list_referrals(
        self,
        session: Session,
        filters: ReferralFilters,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> ReferralPage:
        """One page of referrals matching ``filters`` plus the total match count."""
        query = session.query(Referral)

        if filters.provider_id:
            query = query.filter(Referral.provider_id == filters.provider_id)
        if filters.patient_id:
            query = query.filter(Referral.patient_id == filters.patient_id)
        if filters.statuses:
            query = query.filter(
                Referral.status.in_([ReferralStatus(s) for s in filters.statuses])
            )
        if filters.specialty_type:
            query = query.filter(Referral.specialty_type == filters.specialty_type)
        if filters.urgency_level:
            query = query.filter(Referral.urgency_level == UrgencyLevel(filters.urgency_level))
        if filters.created_from:
            query = query.filter(Referral.created_at >= filters.created_from)
        if filters.created_to:
            query = query.filter(Referral.created_at <= filters.created_to)
        if filters.search:
            search_term = f"%{filters.search}%"
            query = query.filter(
                or_(
                    Referral.referral_number.ilike(search_term),
                    Referral.referral_reason.ilike(search_term),
                    Referral.clinical_notes.ilike(search_term),
                )
            )

        total = query.count()

        order_column = SORT_COLUMNS.get(sort_by, Referral.created_at)
        if descending:
            query = query.order_by(order_column.desc(), Referral.id.desc())
        else:
            query = query.order_by(order_column.asc(), Referral.id.asc())

        referrals = query.offset(offset).limit(limit).all()
        return ReferralPage(referrals=referrals, total=total, limit=limit, offset=offset)

    def referral_stats(self, session: Session, provider_id: Optional[str] = None) -> ReferralStats:
        """Counts by status and urgency, and the mean completion cycle in days."""
        scope = []
        if provider_id:
            scope.append(Referral.provider_id == provider_id)

        by_status = {
            status.value: count
            for status, count in session.query(Referral.status, func.count(Referral.id))
            .filter(*scope)
            .group_by(Referral.status)
            .all()
        }
        by_urgency = {
            urgency.value: count
            for urgency, count in session.query(Referral.urgency_level, func.count(Referral.id))
            .filter(*scope)
            .group_by(Referral.urgency_level)
            .all()
        }
        average = (
            session.query(func.avg(QualityMetric.total_cycle_days))
            .join(Referral, Referral.id == QualityMetric.referral_id)
            .filter(*scope)
            .scalar()
        )
        return ReferralStats(
            total=sum(by_status.values()),
            by_status=by_status,
            by_urgency=by_urgency,
            average_completion_days=float(average) if average is not None else None,
        )

    # =========================================================================
    # HISTORY & ESCALATIONS
    # =========================================================================

    def get_status_history(self, session: Session, referral_id: int) -> list[StatusHistory]:
        """History rows for a referral, oldest first."""
        return (
            session.query(StatusHistory)
            .filter(StatusHistory.referral_id == referral_id)
            .order_by(StatusHistory.changed_at, StatusHistory.id)
            .all()
        )

    def has_active_escalation(self, session: Session, referral_id: int, reason: str) -> bool:
        """Check for an unresolved escalation with the given reason."""
        return (
            session.query(Escalation.id)
            .filter(
                Escalation.referral_id == referral_id,
                Escalation.reason == reason,
                Escalation.status == EscalationStatus.ACTIVE,
            )
            .first()
            is not None
        )
