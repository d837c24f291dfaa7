"""Threshold endpoints: read and upsert per-sensor metric bounds."""

import time

from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from src.alerts.errors import AlertingError
from src.alerts.service import AlertService
from src.api.auth import verify_api_key
from src.api.dependencies import get_alert_service
from src.api.errors import http_error
from src.api.models import (
    ErrorResponse,
    ThresholdItem,
    ThresholdRequest,
    ThresholdResponse,
    ThresholdsResponse,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/sensors/{sensor_id}/thresholds",
    response_model=ThresholdsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Sensor not found"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="List a sensor's thresholds",
)
async def get_thresholds(
    sensor_id: int,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> ThresholdsResponse:
    start_time = time.perf_counter()

    try:
        thresholds = await service.get_thresholds(sensor_id)
        latency_ms = (time.perf_counter() - start_time) * 1000

        return ThresholdsResponse(
            sensor_id=sensor_id,
            thresholds=[ThresholdItem(**t.to_dict()) for t in thresholds],
            latency_ms=round(latency_ms, 2),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to get thresholds: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get thresholds: {str(e)}",
        )


@router.post(
    "/sensors/{sensor_id}/thresholds",
    response_model=ThresholdResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Sensor not found"},
        422: {"model": ErrorResponse, "description": "Invalid threshold"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="Create or update a threshold",
    description=(
        "Upsert the bounds for one metric of a sensor. `min_value` must be "
        "lower than `max_value` and the metric must be one the sensor type "
        "reports; a rejected upsert leaves the stored threshold unchanged."
    ),
)
async def upsert_threshold(
    sensor_id: int,
    body: ThresholdRequest,
    api_key: str = Depends(verify_api_key),
    service: AlertService = Depends(get_alert_service),
) -> ThresholdResponse:
    start_time = time.perf_counter()

    try:
        fields = body.model_dump(exclude={"metric_kind"})
        threshold = await service.upsert_threshold(
            sensor_id, body.metric_kind.upper(), fields,
        )
        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Threshold upserted",
            sensor_id=sensor_id,
            metric_kind=threshold.metric_kind,
            min_value=threshold.min_value,
            max_value=threshold.max_value,
        )

        return ThresholdResponse(
            threshold=ThresholdItem(**threshold.to_dict()),
            latency_ms=round(latency_ms, 2),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to upsert threshold: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to upsert threshold: {str(e)}",
        )
