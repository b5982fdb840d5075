"""
Priority work queue models.

Referrals entering the pending state are placed on the queue that
matches their urgency tier so coordinators work stat items first.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from referral_workflow.models.base import Base, utcnow
from referral_workflow.models.enums import QueueItemStatus

if TYPE_CHECKING:
    from referral_workflow.models.referral import Referral


class WorkQueue(Base):
    """
    Queue configuration table.

    One queue per urgency priority level:
    - referral_queue_priority_1: stat referrals
    - referral_queue_priority_2: urgent referrals
    - referral_queue_priority_3: routine referrals
    """

    __tablename__ = "work_queues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # =========================================================================
    # QUEUE IDENTITY
    # =========================================================================
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    priority_level: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    # =========================================================================
    # QUEUE BEHAVIOR
    # =========================================================================
    sla_minutes: Mapped[Optional[int]] = mapped_column(
        Integer
    )  # Target processing time
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    items: Mapped[list["QueueItem"]] = relationship("QueueItem", back_populates="queue")

    def __repr__(self) -> str:
        return f"<WorkQueue(id={self.id}, name='{self.name}', priority={self.priority_level})>"


class QueueItem(Base):
    """A referral waiting on a priority queue."""

    __tablename__ = "queue_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_id: Mapped[int] = mapped_column(
        ForeignKey("work_queues.id"), nullable=False, index=True
    )
    referral_id: Mapped[int] = mapped_column(
        ForeignKey("referrals.id"), nullable=False, index=True
    )

    status: Mapped[QueueItemStatus] = mapped_column(
        Enum(QueueItemStatus), default=QueueItemStatus.PENDING, index=True
    )

    # =========================================================================
    # SLA TRACKING
    # =========================================================================
    entered_queue_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    queue: Mapped["WorkQueue"] = relationship("WorkQueue", back_populates="items")
    referral: Mapped["Referral"] = relationship("Referral")

    def __repr__(self) -> str:
        return f"<QueueItem(id={self.id}, referral={self.referral_id}, status={self.status.value})>"
