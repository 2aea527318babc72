"""
Main application module for the expense tracker family service.

Sets up the FastAPI application with lifespan management (database
connection, index creation, background maintenance tasks), request logging,
Prometheus metrics and the family router.
"""

import asyncio
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, HTTPException, status
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from expense_tracker.config import settings
from expense_tracker.database import db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.redis_manager import redis_manager
from expense_tracker.routes import family_router
from expense_tracker.routes.family.periodics import periodic_join_request_expiry, periodic_orphaned_family_cleanup
from expense_tracker.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Connects to MongoDB, makes sure the family indexes exist and starts the
    join-request expiry and orphaned-reference cleanup tasks. On shutdown the
    tasks are cancelled and connections are closed.
    """
    startup_start_time = time.time()
    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
        },
    )

    try:
        db_connect_start = time.time()
        logger.info("Initiating database connection...")
        await db_manager.connect()
        log_application_lifecycle(
            "database_connected",
            {
                "connection_duration": f"{time.time() - db_connect_start:.3f}s",
                "database_name": settings.MONGODB_DATABASE,
            },
        )

        indexes_start = time.time()
        await db_manager.create_indexes()
        log_application_lifecycle("database_indexes_ready", {"indexes_duration": f"{time.time() - indexes_start:.3f}s"})
    except Exception as e:
        log_application_lifecycle(
            "startup_failed",
            {
                "error": str(e),
                "error_type": type(e).__name__,
                "startup_duration": f"{time.time() - startup_start_time:.3f}s",
            },
        )
        log_error_with_context(e, {"operation": "application_startup", "phase": "database_connection"})
        raise HTTPException(status_code=503, detail="Service not ready: Database connection failed") from e

    background_tasks = {
        "join_request_expiry": asyncio.create_task(periodic_join_request_expiry()),
        "orphaned_family_cleanup": asyncio.create_task(periodic_orphaned_family_cleanup()),
    }
    log_application_lifecycle(
        "background_tasks_started",
        {"task_count": len(background_tasks), "tasks": list(background_tasks.keys())},
    )

    total_startup_duration = time.time() - startup_start_time
    log_application_lifecycle("startup_completed", {"total_startup_duration": f"{total_startup_duration:.3f}s"})
    logger.info("FastAPI application startup completed in %.3fs", total_startup_duration)

    yield

    shutdown_start_time = time.time()
    log_application_lifecycle("shutdown_initiated", {"active_background_tasks": len(background_tasks)})

    for task in background_tasks.values():
        task.cancel()
    failed_cleanups = []
    for task_name, task in background_tasks.items():
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled successfully", task_name)
        except asyncio.TimeoutError:
            logger.warning("Background task %s cancellation timed out", task_name)
            failed_cleanups.append({"task": task_name, "error": "cancellation_timeout"})
        except Exception as e:
            logger.error("Error during %s cleanup: %s", task_name, e)
            failed_cleanups.append({"task": task_name, "error": str(e)})

    try:
        await db_manager.disconnect()
        log_application_lifecycle("database_disconnected", {})
    except Exception as e:
        log_error_with_context(e, {"operation": "database_disconnection"})

    try:
        await redis_manager.close()
    except Exception as e:
        log_error_with_context(e, {"operation": "redis_disconnection"})

    log_application_lifecycle(
        "shutdown_completed",
        {
            "total_shutdown_duration": f"{time.time() - shutdown_start_time:.3f}s",
            "failed_cleanups": failed_cleanups,
        },
    )


app = FastAPI(
    title="Expense Tracker Family API",
    description="Family membership, invitations and join requests for the expense tracker",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(family_router)
log_application_lifecycle("routers_configured", {"routers": ["family"]})


@app.get("/health", tags=["Health"])
async def health():
    """Liveness plus database reachability."""
    if not await db_manager.health_check():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ok"}


try:
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        should_instrument_requests_inprogress=True,
    )
    instrumentator.add().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")
    log_application_lifecycle("prometheus_configured", {"metrics_endpoint": "/metrics"})
except Exception as e:
    # Continue without metrics rather than failing startup
    log_error_with_context(e, {"operation": "prometheus_setup"})


if __name__ == "__main__":
    uvicorn.run(
        "expense_tracker.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG, log_level="info"
    )
