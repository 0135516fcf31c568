"""Health check and metrics endpoints."""

import httpx
import redis as redis_lib
from fastapi import APIRouter, Response
from prometheus_client import Counter, generate_latest, CONTENT_TYPE_LATEST

from marketdesk.config import settings
from marketdesk.schemas.common import HealthResponse

router = APIRouter(tags=["health"])

# Prometheus metrics
POLL_REQUESTS = Counter("ticket_poll_requests_total", "Ticket message polls", ["transport"])
POLL_FAILURES = Counter("ticket_poll_failures_total", "Failed ticket message polls", ["transport"])
MESSAGES_SENT = Counter("ticket_messages_sent_total", "Ticket messages sent", ["transport", "outcome"])
ORDER_MUTATIONS = Counter("order_mutations_total", "Order lifecycle mutations", ["action", "outcome"])
CHAT_EVENTS = Counter("chat_events_total", "Chat provider push events", ["type"])
ERRORS = Counter("errors_total", "Total errors", ["type"])


def _backend_root(api_base_url: str) -> str:
    base = api_base_url.rstrip("/")
    return base[: -len("/api")] if base.endswith("/api") else base


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    api_status = "ok"
    redis_status = "disabled"
    chat_status = "configured" if settings.chat_api_key else "disabled"

    # Check marketplace backend
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.get(f"{_backend_root(settings.api_base_url)}/health")
            api_status = "ok" if resp.status_code == 200 else "error"
    except Exception:
        api_status = "error"

    # Check Redis only when it holds the session tokens
    if settings.token_store == "redis":
        try:
            r = redis_lib.from_url(settings.redis_url, socket_timeout=2)
            r.ping()
            redis_status = "ok"
        except Exception:
            redis_status = "error"

    overall = "healthy" if api_status == "ok" and redis_status != "error" else "degraded"

    return HealthResponse(
        status=overall,
        api=api_status,
        redis=redis_status,
        chat=chat_status,
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
