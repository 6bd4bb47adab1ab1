"""Worker service entrypoint.

Runs the job workers and recurring triggers until SIGTERM/SIGINT:

    python main.py

Features:
- Structured startup logging
- Graceful shutdown: workers finish their current job before exiting
- Prometheus metrics on METRICS_PORT (0 disables)
"""

import asyncio
import os
import platform
import signal
import sys

from prometheus_client import start_http_server

from config import get_settings
from db.postgres import close_postgres, get_pool_stats, get_session_maker, init_postgres
from db.redis import close_redis, get_redis, init_redis
from services.embeddings import get_embedding_service
from services.llm import get_llm_client
from services.notifications import build_channel
from services.pipeline import Pipeline
from utils.circuit_breaker import get_circuit_breaker_stats
from utils.logging import configure_logging, get_logger
from utils.metrics import REGISTRY

APP_VERSION = "0.1.0"
APP_NAME = "Decision Insights Pipeline"

logger = get_logger(__name__)

shutdown_event = asyncio.Event()


async def init_databases() -> dict[str, bool]:
    """Initialize database connections. PostgreSQL is required, Redis is not."""
    services_status = {"postgres": False, "redis": False}

    try:
        await init_postgres()
        services_status["postgres"] = True
        logger.info("PostgreSQL connection established")
    except Exception as e:
        logger.error(f"Failed to connect to PostgreSQL: {e}")
        raise

    try:
        await init_redis()
        services_status["redis"] = get_redis() is not None
    except Exception as e:
        # The analytics cache degrades to always-miss
        logger.warning(f"Redis unavailable, analytics cache disabled: {e}")
        await close_redis()

    return services_status


async def close_databases():
    """Close all database connections gracefully."""
    errors = []

    try:
        await close_redis()
    except Exception as e:
        errors.append(f"Redis: {e}")
        logger.error(f"Error closing Redis: {e}")

    try:
        await close_postgres()
        logger.info("PostgreSQL connection closed")
    except Exception as e:
        errors.append(f"PostgreSQL: {e}")
        logger.error(f"Error closing PostgreSQL: {e}")

    if errors:
        logger.warning(f"Errors during database shutdown: {errors}")


def setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Set up signal handlers for graceful shutdown."""

    def signal_handler(sig):
        sig_name = signal.Signals(sig).name
        logger.info(f"Received {sig_name}, initiating graceful shutdown...")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f, sig=sig: signal_handler(sig))


def log_startup_banner(settings, services_status: dict[str, bool]):
    """Log structured startup information."""
    logger.info(
        f"{APP_NAME} v{APP_VERSION} starting",
        extra={
            "event": "startup",
            "app_version": APP_VERSION,
            "python_version": sys.version.split()[0],
            "platform": platform.platform(),
            "pid": os.getpid(),
            "workers": settings.worker_count,
            "services": services_status,
            "embedding_model": settings.embedding_model,
            "llm_enabled": settings.llm_enabled,
            "webhook_channel": bool(settings.notification_webhook_url),
        },
    )


async def run() -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level)

    try:
        setup_signal_handlers(asyncio.get_running_loop())
    except Exception as e:
        logger.warning(f"Could not set up signal handlers: {e}")

    services_status = await init_databases()
    log_startup_banner(settings, services_status)

    if settings.metrics_port:
        start_http_server(settings.metrics_port, registry=REGISTRY)
        logger.info(f"Metrics exposed on :{settings.metrics_port}/metrics")

    session_maker = get_session_maker()
    pipeline = Pipeline(
        session_maker,
        embedder=get_embedding_service(),
        explainer=get_llm_client() if settings.llm_enabled else None,
        channel=build_channel(session_maker),
    )

    try:
        await pipeline.start()
        await shutdown_event.wait()
    finally:
        logger.info(
            "Shutdown initiated",
            extra={
                "event": "shutdown",
                "circuit_breakers": get_circuit_breaker_stats(),
                "db_pool": get_pool_stats(),
            },
        )
        await pipeline.stop(timeout=settings.shutdown_timeout)
        await close_databases()
        logger.info("Graceful shutdown complete")


if __name__ == "__main__":
    asyncio.run(run())
