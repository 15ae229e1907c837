"""Alert router: intake through routing rules and human actions.

Acknowledge, close and snooze wait for any escalation step running on the
same alert, so they always take effect after it.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.errors import (
    AlertNotFoundError,
    InvalidAlertTransitionError,
)
from pulsar_escalation.database import get_db
from pulsar_escalation.schemas.alert import (
    AlertAcknowledge,
    AlertClose,
    AlertCreate,
    AlertIntakeResponse,
    AlertPolicyAssign,
    AlertResponse,
    AlertSnooze,
)
from pulsar_escalation.services import alert_service

router = APIRouter(prefix="/api", tags=["alerts"])


def _action_error(e: Exception) -> HTTPException:
    if isinstance(e, AlertNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found"
        )
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post(
    "/organizations/{organization_id}/alerts",
    response_model=AlertIntakeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_alert(
    organization_id: uuid.UUID,
    payload: AlertCreate,
    db: AsyncSession = Depends(get_db),
) -> AlertIntakeResponse:
    """Create an alert, applying the organization's routing rules."""
    result = await alert_service.create_alert(db, organization_id, payload)
    return AlertIntakeResponse(
        alert=AlertResponse.model_validate(result.alert),
        matched_rule_id=result.matched_rule_id,
        suppressed=result.suppressed,
    )


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: uuid.UUID,
    payload: AlertAcknowledge,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    """Acknowledge an alert, stopping its escalation."""
    try:
        alert = await alert_service.acknowledge_alert(db, alert_id, payload.user_id)
    except (AlertNotFoundError, InvalidAlertTransitionError) as e:
        raise _action_error(e) from e
    return AlertResponse.model_validate(alert)


@router.post("/alerts/{alert_id}/close", response_model=AlertResponse)
async def close_alert(
    alert_id: uuid.UUID,
    payload: AlertClose,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    """Close an alert."""
    try:
        alert = await alert_service.close_alert(
            db, alert_id, payload.user_id, reason=payload.reason
        )
    except AlertNotFoundError as e:
        raise _action_error(e) from e
    return AlertResponse.model_validate(alert)


@router.post("/alerts/{alert_id}/snooze", response_model=AlertResponse)
async def snooze_alert(
    alert_id: uuid.UUID,
    payload: AlertSnooze,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    """Pause an alert's escalation until the given time."""
    try:
        alert = await alert_service.snooze_alert(db, alert_id, payload.until)
    except (AlertNotFoundError, InvalidAlertTransitionError) as e:
        raise _action_error(e) from e
    return AlertResponse.model_validate(alert)


@router.put("/alerts/{alert_id}/escalation-policy", response_model=AlertResponse)
async def assign_escalation_policy(
    alert_id: uuid.UUID,
    payload: AlertPolicyAssign,
    db: AsyncSession = Depends(get_db),
) -> AlertResponse:
    """Assign or clear an alert's escalation policy, restarting escalation."""
    try:
        alert = await alert_service.assign_escalation_policy(
            db, alert_id, payload.escalation_policy_id
        )
    except (AlertNotFoundError, InvalidAlertTransitionError) as e:
        raise _action_error(e) from e
    return AlertResponse.model_validate(alert)
