"""
FastAPI sensor alerting service.

Provides REST and WebSocket APIs for:
- POST /readings - Reading ingestion into the evaluator
- /sensors/{id}/thresholds and /sensors/{id}/alert-config - Configuration
- /alerts - Alert queries, resolution, escalation and resend
- WS /ws/alerts - Realtime alert events
- GET /health - Service health check
"""

from src.api.app import create_app

__all__ = ["create_app"]
