"""Alert endpoints for querying, resolving, escalating and resending alerts."""

import time

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from src.alerts.errors import AlertingError
from src.alerts.schemas import VALID_SEVERITIES, VALID_STATES, Alert
from src.alerts.service import AlertService
from src.api.auth import verify_api_key
from src.api.dependencies import get_alert_service
from src.api.errors import http_error
from src.api.models import (
    AlertHistoryResponse,
    AlertItem,
    AlertResponse,
    AlertsResponse,
    AlertStatsResponse,
    AttemptItem,
    AttemptsResponse,
    ChannelResultItem,
    ErrorResponse,
    ResendRequest,
    ResendResponse,
    ResolveRequest,
    TestNotificationRequest,
    TestNotificationResponse,
)
from src.sensors.schemas import VALID_SENSOR_TYPES

logger = structlog.get_logger(__name__)
router = APIRouter()

_READ_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Invalid API key"},
    404: {"model": ErrorResponse, "description": "Not found"},
    500: {"model": ErrorResponse, "description": "Server error"},
}

_MUTATION_RESPONSES = {
    **_READ_RESPONSES,
    409: {"model": ErrorResponse, "description": "Alert already resolved or terminal"},
    422: {"model": ErrorResponse, "description": "Invalid request"},
}


def _to_item(alert: Alert) -> AlertItem:
    return AlertItem(**alert.to_dict())


def _latency_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(e)}",
    )


@router.get(
    "/alerts",
    response_model=AlertsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Invalid filter parameter"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="List alerts",
    description=(
        "List alerts with optional filtering by severity, state, sensor, "
        "company, sensor type, location and free text. Ordered by most "
        "recent first."
    ),
)
async def list_alerts(
    severity: str | None = Query(
        default=None,
        description="Filter by severity: BAJA, MEDIA, ALTA, CRITICA",
    ),
    state: str | None = Query(
        default=None,
        description="Filter by state: ACTIVA, EN_ESCALAMIENTO, ESCALADA, RESUELTA",
    ),
    sensor_id: int | None = Query(default=None, description="Filter by sensor"),
    company_id: int | None = Query(default=None, description="Filter by company"),
    sensor_type: str | None = Query(
        default=None,
        description="Filter by sensor type: TEMPERATURA, HUMEDAD, PESO, PRESION, MULTIPARAMETRICO",
    ),
    location: str | None = Query(default=None, description="Substring of the sensor location"),
    q: str | None = Query(default=None, description="Free text over message and sensor name"),
    limit: int = Query(default=50, ge=1, le=500, description="Maximum alerts to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertsResponse:
    start_time = time.perf_counter()

    try:
        # Validate enum params
        if severity and severity not in VALID_SEVERITIES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=(
                    f"Invalid severity {severity!r}. "
                    f"Must be one of: {sorted(VALID_SEVERITIES)}"
                ),
            )

        if state and state not in VALID_STATES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=(
                    f"Invalid state {state!r}. "
                    f"Must be one of: {sorted(VALID_STATES)}"
                ),
            )

        if sensor_type and sensor_type not in VALID_SENSOR_TYPES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=(
                    f"Invalid sensor_type {sensor_type!r}. "
                    f"Must be one of: {sorted(VALID_SENSOR_TYPES)}"
                ),
            )

        alerts = await service.list_alerts(
            severity=severity,
            state=state,
            sensor_id=sensor_id,
            company_id=company_id,
            sensor_type=sensor_type,
            location=location,
            q=q,
            limit=limit,
            offset=offset,
        )
        items = [_to_item(a) for a in alerts]
        latency_ms = _latency_ms(start_time)

        logger.info(
            "Alerts listed",
            total=len(items),
            severity=severity,
            state=state,
            latency_ms=latency_ms,
        )

        return AlertsResponse(alerts=items, total=len(items), latency_ms=latency_ms)

    except HTTPException:
        raise
    except Exception as e:
        raise _internal_error("list alerts", e)


@router.get(
    "/alerts/active",
    response_model=AlertsResponse,
    responses=_READ_RESPONSES,
    summary="List unresolved alerts",
)
async def list_active_alerts(
    sensor_id: int | None = Query(default=None, description="Restrict to one sensor"),
    company_id: int | None = Query(default=None, description="Restrict to one company"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertsResponse:
    start_time = time.perf_counter()

    try:
        alerts = await service.get_active(sensor_id=sensor_id, company_id=company_id)
        items = [_to_item(a) for a in alerts]
        return AlertsResponse(alerts=items, total=len(items), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("list active alerts", e)


@router.get(
    "/alerts/stats",
    response_model=AlertStatsResponse,
    responses=_READ_RESPONSES,
    summary="Alert counts by severity and state",
)
async def get_alert_stats(
    sensor_id: int | None = Query(default=None, description="Restrict to one sensor"),
    company_id: int | None = Query(default=None, description="Restrict to one company"),
    days: int | None = Query(default=None, ge=1, le=365, description="Only alerts created in the last N days"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertStatsResponse:
    start_time = time.perf_counter()

    try:
        stats = await service.get_stats(sensor_id=sensor_id, company_id=company_id, days=days)
        return AlertStatsResponse(**stats, latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("get alert stats", e)


@router.post(
    "/alerts/test-notification",
    response_model=TestNotificationResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        422: {"model": ErrorResponse, "description": "Unknown or unconfigured channel"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="Send a synthetic notification",
    description=(
        "Send a test message through one channel without creating an alert "
        "or recording attempts. Useful to verify provider credentials."
    ),
)
async def send_test_notification(
    body: TestNotificationRequest,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> TestNotificationResponse:
    start_time = time.perf_counter()

    try:
        result = await service.send_test(body.channel, body.recipient, body.severity)

        logger.info(
            "Test notification sent",
            channel=body.channel,
            success=result.success,
        )

        return TestNotificationResponse(
            result=ChannelResultItem(**result.to_dict()),
            latency_ms=_latency_ms(start_time),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("send test notification", e)


@router.get(
    "/alerts/{alert_id}",
    response_model=AlertResponse,
    responses=_READ_RESPONSES,
    summary="Get one alert",
)
async def get_alert(
    alert_id: str,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertResponse:
    start_time = time.perf_counter()

    try:
        alert = await service.get_alert(alert_id)
        return AlertResponse(alert=_to_item(alert), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("get alert", e)


@router.get(
    "/alerts/{alert_id}/attempts",
    response_model=AttemptsResponse,
    responses=_READ_RESPONSES,
    summary="Notification attempt history of an alert",
)
async def get_alert_attempts(
    alert_id: str,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AttemptsResponse:
    start_time = time.perf_counter()

    try:
        attempts = await service.get_attempts(alert_id)
        return AttemptsResponse(
            alert_id=alert_id,
            attempts=[AttemptItem(**a.to_dict()) for a in attempts],
            total=len(attempts),
            latency_ms=_latency_ms(start_time),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("get alert attempts", e)


@router.post(
    "/alerts/{alert_id}/resolve",
    response_model=AlertResponse,
    responses=_MUTATION_RESPONSES,
    summary="Resolve an alert",
    description="Close an alert. A second resolve returns 409.",
)
async def resolve_alert(
    alert_id: str,
    body: ResolveRequest | None = None,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertResponse:
    start_time = time.perf_counter()

    try:
        comment = body.comment if body else None
        alert = await service.resolve(alert_id, comment)

        logger.info("Alert resolved", alert_id=alert_id)

        return AlertResponse(alert=_to_item(alert), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("resolve alert", e)


@router.post(
    "/alerts/{alert_id}/escalate",
    response_model=AlertResponse,
    responses=_MUTATION_RESPONSES,
    summary="Escalate an alert one level",
    description=(
        "Advance the alert to the next escalation level now, regardless of "
        "its timeout. Returns 409 for resolved alerts or alerts already at "
        "the highest level."
    ),
)
async def escalate_alert(
    alert_id: str,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertResponse:
    start_time = time.perf_counter()

    try:
        alert = await service.escalate(alert_id)

        logger.info(
            "Alert escalated manually",
            alert_id=alert_id,
            escalation_level=alert.escalation_level,
        )

        return AlertResponse(alert=_to_item(alert), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("escalate alert", e)


@router.post(
    "/alerts/{alert_id}/resend",
    response_model=ResendResponse,
    responses=_MUTATION_RESPONSES,
    summary="Resend the current notification on one channel",
    description=(
        "Retry delivery of the alert's current level on one channel. "
        "Attempts still count toward the per-recipient ceiling."
    ),
)
async def resend_alert(
    alert_id: str,
    body: ResendRequest,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> ResendResponse:
    start_time = time.perf_counter()

    try:
        alert, results = await service.resend(alert_id, body.channel)

        return ResendResponse(
            alert=_to_item(alert),
            results=[ChannelResultItem(**r.to_dict()) for r in results],
            latency_ms=_latency_ms(start_time),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("resend alert", e)


@router.get(
    "/sensors/{sensor_id}/alerts",
    response_model=AlertsResponse,
    responses=_READ_RESPONSES,
    summary="List a sensor's alerts",
)
async def list_sensor_alerts(
    sensor_id: int,
    limit: int = Query(default=50, ge=1, le=500, description="Maximum alerts to return"),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertsResponse:
    start_time = time.perf_counter()

    try:
        alerts = await service.list_for_sensor(sensor_id, limit=limit, offset=offset)
        items = [_to_item(a) for a in alerts]
        return AlertsResponse(alerts=items, total=len(items), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("list sensor alerts", e)


@router.get(
    "/sensors/{sensor_id}/alerts/active",
    response_model=AlertsResponse,
    responses=_READ_RESPONSES,
    summary="List a sensor's unresolved alerts",
)
async def list_sensor_active_alerts(
    sensor_id: int,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertsResponse:
    start_time = time.perf_counter()

    try:
        alerts = await service.get_active(sensor_id=sensor_id)
        items = [_to_item(a) for a in alerts]
        return AlertsResponse(alerts=items, total=len(items), latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("list sensor active alerts", e)


@router.get(
    "/sensors/{sensor_id}/alerts/history",
    response_model=AlertHistoryResponse,
    responses=_READ_RESPONSES,
    summary="Alert history of a sensor grouped by date",
)
async def get_sensor_alert_history(
    sensor_id: int,
    days: int | None = Query(default=None, ge=1, le=365, description="Days to look back (default 30)"),
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertHistoryResponse:
    start_time = time.perf_counter()

    try:
        history = await service.get_history(sensor_id, days)
        return AlertHistoryResponse(**history, latency_ms=_latency_ms(start_time))

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        raise _internal_error("get sensor alert history", e)
