"""Alert configuration endpoints: recipients, escalation levels and quiet hours."""

import time

from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from src.alerts.errors import AlertingError
from src.alerts.schemas import AlertConfiguration
from src.alerts.service import AlertService
from src.api.auth import verify_api_key
from src.api.dependencies import get_alert_service
from src.api.errors import http_error
from src.api.models import (
    AlertConfigRequest,
    AlertConfigResponse,
    CompanyScheduleResponse,
    ErrorResponse,
    ScheduleWindowModel,
)

logger = structlog.get_logger(__name__)
router = APIRouter()

_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Invalid API key"},
    404: {"model": ErrorResponse, "description": "Sensor not found"},
    422: {"model": ErrorResponse, "description": "Invalid configuration"},
    500: {"model": ErrorResponse, "description": "Server error"},
}


def _config_to_response(config: AlertConfiguration) -> AlertConfigResponse:
    return AlertConfigResponse(**config.to_dict())


@router.get(
    "/sensors/{sensor_id}/alert-config",
    response_model=AlertConfigResponse,
    responses=_RESPONSES,
    summary="Get a sensor's alert configuration",
    description="Returns the stored configuration, or the defaults when none was saved.",
)
async def get_alert_config(
    sensor_id: int,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertConfigResponse:
    try:
        config = await service.get_alert_config(sensor_id)
        return _config_to_response(config)

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get alert config: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get alert config: {str(e)}",
        )


@router.post(
    "/sensors/{sensor_id}/alert-config",
    response_model=AlertConfigResponse,
    responses=_RESPONSES,
    summary="Create or replace a sensor's alert configuration",
    description="""
    Store recipients, escalation levels, an optional quiet-hours window
    and the per-recipient attempt ceiling for a sensor.

    Escalation levels must be numbered 1..N with positive timeouts and may
    only reference recipients defined in the same configuration.
    """,
)
async def upsert_alert_config(
    sensor_id: int,
    body: AlertConfigRequest,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> AlertConfigResponse:
    start_time = time.perf_counter()

    try:
        config = await service.upsert_alert_config(sensor_id, body.model_dump())
        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Alert config upserted",
            sensor_id=sensor_id,
            recipients=len(config.recipients),
            levels=len(config.escalation.levels),
            latency_ms=round(latency_ms, 2),
        )

        return _config_to_response(config)

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to upsert alert config: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to upsert alert config: {str(e)}",
        )


@router.get(
    "/companies/{company_id}/schedule",
    response_model=CompanyScheduleResponse,
    responses=_RESPONSES,
    summary="Get a company's quiet-hours window",
)
async def get_company_schedule(
    company_id: int,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> CompanyScheduleResponse:
    try:
        window = await service.get_company_schedule(company_id)
        return CompanyScheduleResponse(
            company_id=company_id,
            schedule=ScheduleWindowModel(**window.to_dict()) if window else None,
        )

    except Exception as e:
        logger.error(f"Failed to get company schedule: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get company schedule: {str(e)}",
        )


@router.post(
    "/companies/{company_id}/schedule",
    response_model=CompanyScheduleResponse,
    responses=_RESPONSES,
    summary="Set a company's quiet-hours window",
    description=(
        "Non-critical notifications for the company's sensors are deferred "
        "outside this window unless a sensor configuration overrides it."
    ),
)
async def upsert_company_schedule(
    company_id: int,
    body: ScheduleWindowModel,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> CompanyScheduleResponse:
    try:
        window = await service.upsert_company_schedule(company_id, body.model_dump())

        logger.info("Company schedule upserted", company_id=company_id)

        return CompanyScheduleResponse(
            company_id=company_id,
            schedule=ScheduleWindowModel(**window.to_dict()),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to upsert company schedule: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to upsert company schedule: {str(e)}",
        )
