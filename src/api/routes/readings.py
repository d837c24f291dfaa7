"""
Reading ingestion endpoints: the entry point into the evaluator.
"""

import time

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.requests import Request
import structlog

from src.alerts.errors import AlertingError
from src.alerts.evaluator import EvaluationResult, ReadingEvaluator
from src.api.auth import verify_api_key
from src.api.dependencies import get_reading_evaluator
from src.api.errors import http_error
from src.api.models import (
    ErrorResponse,
    ReadingBatchRequest,
    ReadingErrorItem,
    ReadingRequest,
    ReadingResultItem,
    ReadingsResponse,
)
from src.api.rate_limit import limiter, readings_limit
from src.observability.tracing import optional_span

logger = structlog.get_logger(__name__)
router = APIRouter()


def _result_to_item(result: EvaluationResult) -> ReadingResultItem:
    return ReadingResultItem(**result.to_dict())


@router.post(
    "/readings",
    response_model=ReadingsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        404: {"model": ErrorResponse, "description": "Unknown sensor"},
        422: {"model": ErrorResponse, "description": "Invalid reading"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="Ingest one sensor reading",
    description="""
    Evaluate a reading against its sensor's threshold.

    An out-of-bounds reading opens an alert for the (sensor, metric) pair,
    or updates the open one. Normal readings never resolve an alert.
    """,
)
@limiter.limit(readings_limit)
async def ingest_reading(
    request: Request,
    body: ReadingRequest,
    api_key: str = Depends(verify_api_key),
    evaluator: ReadingEvaluator = Depends(get_reading_evaluator),
) -> ReadingsResponse:
    start_time = time.perf_counter()

    try:
        with optional_span(
            "sensor-alerts.readings",
            "reading.evaluate",
            {"sensor.id": body.sensor_id, "reading.metric_kind": body.metric_kind},
        ) as span:
            result = await evaluator.process(body.model_dump())
            if span is not None:
                span.set_attribute("reading.classification", result.classification)

        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Reading evaluated",
            sensor_id=body.sensor_id,
            metric_kind=result.reading.metric_kind,
            classification=result.classification,
            alert_id=result.alert.alert_id if result.alert else None,
            latency_ms=round(latency_ms, 2),
        )

        return ReadingsResponse(
            results=[_result_to_item(result)],
            processed=1,
            latency_ms=round(latency_ms, 2),
        )

    except AlertingError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to evaluate reading: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to evaluate reading: {str(e)}",
        )


@router.post(
    "/readings/batch",
    response_model=ReadingsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid API key"},
        500: {"model": ErrorResponse, "description": "Server error"},
    },
    summary="Ingest a batch of sensor readings",
    description=(
        "Evaluate readings in order. A reading that fails validation is "
        "reported in `errors` and does not stop the batch."
    ),
)
@limiter.limit(readings_limit)
async def ingest_readings_batch(
    request: Request,
    body: ReadingBatchRequest,
    api_key: str = Depends(verify_api_key),
    evaluator: ReadingEvaluator = Depends(get_reading_evaluator),
) -> ReadingsResponse:
    start_time = time.perf_counter()

    try:
        with optional_span(
            "sensor-alerts.readings", "reading.evaluate_batch", {"batch.size": len(body.readings)},
        ):
            batch = await evaluator.process_batch([r.model_dump() for r in body.readings])

        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Reading batch evaluated",
            received=len(body.readings),
            processed=len(batch.results),
            errors=len(batch.errors),
            latency_ms=round(latency_ms, 2),
        )

        return ReadingsResponse(
            results=[_result_to_item(r) for r in batch.results],
            errors=[ReadingErrorItem(**e) for e in batch.errors],
            processed=len(batch.results),
            latency_ms=round(latency_ms, 2),
        )

    except Exception as e:
        logger.error(f"Failed to evaluate reading batch: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to evaluate reading batch: {str(e)}",
        )
