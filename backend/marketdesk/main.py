"""FastAPI application entry point - health, metrics and the chat push webhook."""

import structlog
from fastapi import FastAPI

from marketdesk.config import settings
from marketdesk.api import health, chat_events


def configure_logging(debug: bool = False) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# Configure structured logging
configure_logging(settings.debug)

app = FastAPI(
    title=settings.app_name,
    description="Ticket conversation and order lifecycle service for the creator marketplace",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# Mount routers
app.include_router(health.router)
app.include_router(chat_events.router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "transport": settings.message_transport,
        "docs": "/docs",
    }
