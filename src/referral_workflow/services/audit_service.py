"""
Audit trail emitter and its SQL sink.

Recording is best-effort: a failing sink is logged and swallowed so an
audit outage never turns a committed change into an error for the caller.
"""

import logging
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.orm import sessionmaker

from referral_workflow.models import (
    AuditAction,
    AuditEvent,
    WorkflowEvent,
    WorkflowEventType,
    session_scope,
    utcnow,
)
from referral_workflow.services.ports import (
    AuditEventRecord,
    AuditSink,
    WorkflowEventRecord,
)

logger = logging.getLogger(__name__)


def _jsonable(values: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Flatten enums and timestamps so values fit a JSON column."""
    cleaned: dict[str, Any] = {}
    for key, value in (values or {}).items():
        if hasattr(value, "value"):
            value = value.value
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        cleaned[key] = value
    return cleaned


class SqlAuditSink:
    """Appends audit and workflow events in their own transactions."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append_audit(self, event: AuditEventRecord) -> None:
        with session_scope(self.session_factory) as session:
            session.add(
                AuditEvent(
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    old_values=event.old_values or None,
                    new_values=event.new_values or None,
                    actor=event.actor,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    timestamp=event.timestamp or utcnow(),
                )
            )

    def append_workflow(self, event: WorkflowEventRecord) -> None:
        with session_scope(self.session_factory) as session:
            session.add(
                WorkflowEvent(
                    referral_id=event.referral_id,
                    event_type=event.event_type,
                    event_data=event.event_data or None,
                    created_by=event.created_by,
                )
            )


class AuditTrail:
    """
    Builds audit records and hands them to an AuditSink.

    Args:
        sink: Where records are stored
        clock: Returns the current naive-UTC time
    """

    def __init__(self, sink: AuditSink, clock: Callable[[], datetime] = utcnow):
        self.sink = sink
        self.clock = clock

    def record(
        self,
        action: Union[AuditAction, str],
        entity_type: str,
        entity_id: Any,
        old_values: Optional[Mapping[str, Any]] = None,
        new_values: Optional[Mapping[str, Any]] = None,
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Append an audit event. Returns False when the sink failed."""
        action_name = action.value if isinstance(action, AuditAction) else str(action)
        event = AuditEventRecord(
            action=action_name,
            entity_type=entity_type,
            entity_id=None if entity_id is None else str(entity_id),
            actor=actor,
            old_values=_jsonable(old_values),
            new_values=_jsonable(new_values),
            ip_address=ip_address,
            user_agent=user_agent,
            timestamp=self.clock(),
        )
        try:
            self.sink.append_audit(event)
        except Exception:
            logger.exception(f"Failed to record audit event {action_name} for {entity_type} {entity_id}")
            return False
        return True

    def workflow_event(
        self,
        referral_id: int,
        event_type: Union[WorkflowEventType, str],
        event_data: Optional[Mapping[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> bool:
        """Append a workflow event. Returns False when the sink failed."""
        type_name = (
            event_type.value if isinstance(event_type, WorkflowEventType) else str(event_type)
        )
        event = WorkflowEventRecord(
            referral_id=referral_id,
            event_type=type_name,
            event_data=_jsonable(event_data),
            created_by=created_by,
        )
        try:
            self.sink.append_workflow(event)
        except Exception:
            logger.exception(f"Failed to record workflow event {type_name} for referral {referral_id}")
            return False
        return True
