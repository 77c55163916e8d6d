import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.main import api_router
from app.clients.auth_client import AuthClient
from app.clients.escrow_client import RpcEscrowAdapter
from app.clients.paypal_client import PayPalGateway
from app.clients.razorpay_client import RazorpayGateway
from app.clients.tracking_client import Track17Client
from app.consumers.escrow_consumer import start_escrow_consumer
from app.core.config import settings
from app.core.errors import AppError, app_error_handler
from app.core.kafka import escrow_event_consumer, kafka_producer
from app.core.logging import configure_logging, get_logger
from app.core.metrics import (
    background_task_errors_total,
    background_tasks_running,
    registry,
)
from app.core.redis import redis_client
from app.middleware.logging_middleware import LoggingMiddleware
from app.middleware.metrics_middleware import MetricsMiddleware
from app.middleware.tracing_middleware import TracingMiddleware
from app.processors.tracking_processor import start_tracking_processor

# Must run before any module-level logger is used
configure_logging()
logger = get_logger(__name__)

ESCROW_CONSUMER_TASK = "escrow_consumer"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect infrastructure, start collaborators and background tasks"""
    consumer_task = None
    processor_task = None
    monitor_task = None

    logger.info(
        "application_starting", service=settings.SERVICE_NAME, environment=settings.ENVIRONMENT
    )

    # Outbound collaborators, resolved by the route dependencies in app.deps
    app.state.auth_client = AuthClient()
    app.state.razorpay = RazorpayGateway()
    app.state.paypal = PayPalGateway()
    app.state.tracking_client = Track17Client()
    app.state.escrow = RpcEscrowAdapter()
    collaborators = [
        app.state.auth_client,
        app.state.razorpay,
        app.state.paypal,
        app.state.tracking_client,
        app.state.escrow,
    ]

    try:
        Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
        await redis_client.connect()
        await kafka_producer.start()
        await escrow_event_consumer.start()
        for collaborator in collaborators:
            await collaborator.start()

        consumer_task = asyncio.create_task(start_escrow_consumer(), name=ESCROW_CONSUMER_TASK)
        background_tasks_running.labels(task_name=ESCROW_CONSUMER_TASK).set(1)
        processor_task = asyncio.create_task(
            start_tracking_processor(app.state.tracking_client), name="tracking_processor"
        )
        monitor_task = asyncio.create_task(monitor_background_tasks(consumer_task, processor_task))

        logger.info(
            "application_started",
            redis_connected=True,
            kafka_connected=True,
            razorpay_configured=app.state.razorpay.is_configured(),
            paypal_configured=app.state.paypal.is_configured(),
            track17_configured=app.state.tracking_client.is_configured(),
            escrow_initialized=app.state.escrow.is_initialized(),
            background_tasks=[ESCROW_CONSUMER_TASK, "tracking_processor"],
        )
    except Exception as e:
        logger.error(
            "application_startup_failed",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )
        background_task_errors_total.labels(task_name="startup", error_type="startup_error").inc()
        raise

    yield

    logger.info("application_shutting_down")

    try:
        for task in (monitor_task, consumer_task, processor_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        background_tasks_running.labels(task_name=ESCROW_CONSUMER_TASK).set(0)

        for collaborator in reversed(collaborators):
            await collaborator.stop()
        await escrow_event_consumer.stop()
        await kafka_producer.stop()
        await redis_client.disconnect()

        logger.info("application_shutdown_complete")
    except Exception as e:
        logger.error(
            "application_shutdown_error",
            error_type=type(e).__name__,
            error_message=str(e),
            exc_info=True,
        )


async def monitor_background_tasks(*tasks: asyncio.Task):
    """Report background tasks that died so the failure shows up in metrics"""
    reported: set[str] = set()
    while True:
        await asyncio.sleep(30)

        for task in tasks:
            task_name = task.get_name()
            if task_name in reported or not task.done() or task.cancelled():
                continue
            error = task.exception()
            if error is None:
                continue
            reported.add(task_name)
            logger.error(
                "background_task_failed",
                task_name=task_name,
                error_type=type(error).__name__,
                error_message=str(error),
                exc_info=error,
            )
            background_tasks_running.labels(task_name=task_name).set(0)
            background_task_errors_total.labels(
                task_name=task_name, error_type=type(error).__name__
            ).inc()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.add_exception_handler(AppError, app_error_handler)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


# Middleware runs in reverse registration order:
# Tracing -> Logging -> Metrics -> route, so access logs and metrics carry trace.id
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(TracingMiddleware)

app.include_router(api_router, prefix=settings.API_PREFIX)

# Dispute chat attachments; the lifespan creates the directory
app.mount(
    "/uploads/disputes",
    StaticFiles(directory=Path(settings.UPLOAD_DIR), check_dir=False),
    name="dispute-uploads",
)
