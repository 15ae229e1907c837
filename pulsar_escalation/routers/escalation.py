"""Escalation router.

Triggers an immediate escalation tick and exposes an alert's escalation
history.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.errors import AlertNotFoundError
from pulsar_escalation.database import get_db
from pulsar_escalation.schemas.escalation import (
    AlertOutcomeResponse,
    EscalationEventResponse,
    EscalationTimelineResponse,
    NotificationLogResponse,
    TickReportResponse,
)
from pulsar_escalation.services.alert_service import get_alert
from pulsar_escalation.services.escalation_engine import (
    get_escalation_events_for_alert,
    get_notification_logs_for_alert,
)
from pulsar_escalation.services.escalation_worker import EscalationWorker

router = APIRouter(prefix="/api/escalation", tags=["escalation"])


def get_escalation_worker(request: Request) -> EscalationWorker:
    """FastAPI dependency returning the worker created at startup."""
    worker = getattr(request.app.state, "escalation_worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Escalation worker is not available",
        )
    return worker


@router.post("/run", response_model=TickReportResponse)
async def run_escalations(
    worker: EscalationWorker = Depends(get_escalation_worker),
) -> TickReportResponse:
    """Run one escalation tick now and return its report."""
    report = await worker.run_once()
    summary = report.summary()
    return TickReportResponse(
        started_at=report.started_at,
        finished_at=report.finished_at or report.started_at,
        candidates=report.candidates,
        advanced=summary["advanced"],
        exhausted=summary["exhausted"],
        not_due=summary["not_due"],
        skipped=summary["skipped"],
        failed=summary["failed"],
        notifications_sent=summary["notifications_sent"],
        notifications_suppressed=summary["notifications_suppressed"],
        notifications_failed=summary["notifications_failed"],
        outcomes=[
            AlertOutcomeResponse(
                alert_id=result.alert_id,
                outcome=result.outcome.value,
                reason=result.reason,
            )
            for result in report.results
        ],
    )


@router.get(
    "/alerts/{alert_id}/timeline",
    response_model=EscalationTimelineResponse,
)
async def get_alert_escalation_timeline(
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EscalationTimelineResponse:
    """Escalation events and notification attempts for an alert."""
    try:
        alert = await get_alert(db, alert_id)
    except AlertNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found",
        ) from e

    events = await get_escalation_events_for_alert(db, alert_id)
    logs = await get_notification_logs_for_alert(db, alert_id)

    return EscalationTimelineResponse(
        alert_id=alert_id,
        status=alert.status.value,
        escalation_level=alert.escalation_level,
        escalation_repeat_count=alert.escalation_repeat_count,
        events=[
            EscalationEventResponse(
                id=event.id,
                alert_id=event.alert_id,
                rule_id=event.rule_id,
                event_type=event.event_type.value,
                level=event.level,
                repeat_count=event.repeat_count,
                recipients_notified=event.recipients_notified,
                reason=event.reason,
                triggered_at=event.triggered_at,
            )
            for event in events
        ],
        notifications=[
            NotificationLogResponse(
                id=log.id,
                user_id=log.user_id,
                channel=log.channel.value if log.channel else None,
                escalation_level=log.escalation_level,
                status=log.status.value,
                reason=log.reason,
                error_message=log.error_message,
                created_at=log.created_at,
            )
            for log in logs
        ],
        count=len(events),
    )
