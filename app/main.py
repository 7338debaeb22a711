import hmac
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.deps import Deps, get_deps
from app.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from app.metrics import get_metrics, get_metrics_content_type, messages_routed_total, record_outcome
from app.schemas import (
    ErrorResponse,
    HealthResponse,
    InboundMessageForm,
    ProcessRemindersResponse,
    ReminderResultResponse,
    ReminderTestRequest,
    ReminderTriggerRequest,
    SendResponse,
    StatusCallbackForm,
    describe_validation_error,
)
from app.storage import check_db_health, init_db
from app.utils import verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Close the provider HTTP client
    """
    # Startup
    init_db()
    yield
    # Shutdown
    deps = app.state.deps
    if "provider" in deps.__dict__:
        deps.provider.close()


app = FastAPI(
    title="Messaging Orchestration API",
    description="SMS/WhatsApp send intake, shift reminders and Twilio webhooks",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.deps = Deps(settings)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation failures are answered with 400."""
    detail = describe_validation_error(exc)
    log_request_data(request, result="validation_error")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": detail, "type": "client_error"},
    )


def require_cron_secret(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Bearer CRON_SECRET guard for the reminder endpoints."""
    expected = settings.CRON_SECRET
    provided = authorization[7:].strip() if authorization and authorization.lower().startswith("bearer ") else ""
    if not expected or not hmac.compare_digest(provided, expected):
        logger.warning("Reminder endpoint called without a valid cron secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def twilio_signature_valid(request: Request, params: dict) -> bool:
    """
    Check X-Twilio-Signature when a webhook auth token is configured.
    """
    token = settings.TWILIO_WEBHOOK_AUTH_TOKEN
    if settings.SKIP_TWILIO_SIGNATURE_VALIDATION or not token:
        return True
    signature = request.headers.get("X-Twilio-Signature", "")
    return verify_twilio_signature(str(request.url), params, signature, token)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. JWT_VERIFICATION_KEY is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.JWT_VERIFICATION_KEY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="JWT_VERIFICATION_KEY not configured"
        )

    # Check if DB is reachable and schema is applied
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Send Route
# =============================================================================

@app.post(
    "/messages/send",
    response_model=SendResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Validation, configuration or session-window error"},
        401: {"model": ErrorResponse, "description": "Invalid or missing token"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Infrastructure failure (dead-lettered)"},
    }
)
async def send_message(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    deps: Deps = Depends(get_deps),
) -> JSONResponse:
    """
    Queue an outbound SMS/WhatsApp message.

    - Authenticates the bearer JWT (company_id claim)
    - Validates the body, resolves credentials and applies the rate limit
    - Decides the channel from the recipient's recent inbound messages
    - Publishes a send task to the immediate or reminder queue

    Server errors are copied to the dead-letter queue after the response.
    """
    raw_body = await request.body()
    logger.debug(f"Send request body size: {len(raw_body)} bytes")

    outcome = await run_in_threadpool(deps.router.route, authorization, raw_body)

    record_outcome(messages_routed_total, outcome.result)
    log_request_data(
        request, company_id=outcome.company_id, message_id=outcome.message_id, result=outcome.result
    )

    background = None
    if outcome.dead_letter is not None:
        background = BackgroundTask(
            deps.dead_letters.record,
            outcome.dead_letter,
            outcome.error or "",
            "message_router",
        )

    return JSONResponse(status_code=outcome.status_code, content=outcome.body, background=background)


# =============================================================================
# Reminder Routes
# =============================================================================

@app.post(
    "/reminders/process",
    response_model=ProcessRemindersResponse,
    dependencies=[Depends(require_cron_secret)],
)
def process_reminders(request: Request, deps: Deps = Depends(get_deps)) -> ProcessRemindersResponse:
    """Periodic reminder run across all tiers."""
    results = deps.scheduler.process_scheduled_reminders()
    successful = sum(1 for result in results if result.success)
    log_request_data(request, result="processed", processed=len(results))

    return ProcessRemindersResponse(
        results=[ReminderResultResponse(**result.to_dict()) for result in results],
        processed=len(results),
        successful=successful,
        failed=len(results) - successful,
    )


@app.post(
    "/reminders/trigger",
    response_model=ProcessRemindersResponse,
    dependencies=[Depends(require_cron_secret)],
)
def trigger_reminders(
    payload: ReminderTriggerRequest,
    request: Request,
    deps: Deps = Depends(get_deps),
) -> ProcessRemindersResponse:
    """Send one tier's reminder to every eligible associate on a job slot."""
    results = deps.scheduler.process_trigger(
        payload.job_id, payload.work_date, payload.start_time, payload.reminder_type
    )
    successful = sum(1 for result in results if result.success)
    log_request_data(request, result="processed", processed=len(results))

    return ProcessRemindersResponse(
        results=[ReminderResultResponse(**result.to_dict()) for result in results],
        processed=len(results),
        successful=successful,
        failed=len(results) - successful,
    )


@app.post(
    "/reminders/test",
    response_model=ReminderResultResponse,
    responses={404: {"model": ErrorResponse, "description": "No such assignment"}},
    dependencies=[Depends(require_cron_secret)],
)
def send_test_reminder(
    payload: ReminderTestRequest,
    request: Request,
    deps: Deps = Depends(get_deps),
):
    """Send a day-before reminder to one assignment, ignoring eligibility."""
    result = deps.scheduler.send_test_reminder(payload.job_id, payload.associate_id)
    if not result.ok:
        log_request_data(request, result=result.kind.value)
        return JSONResponse(
            status_code=result.kind.http_status,
            content={"detail": result.message, "type": "client_error"},
        )

    log_request_data(request, result="sent" if result.value.success else "failed")
    return ReminderResultResponse(**result.value.to_dict())


# =============================================================================
# Twilio Webhook Routes
# =============================================================================

@app.post("/webhooks/twilio/message-status", response_class=PlainTextResponse)
async def message_status_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    deps: Deps = Depends(get_deps),
) -> PlainTextResponse:
    """
    Delivery status callback.

    Always acknowledged with 200; the callback is processed after the
    response is sent.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if not twilio_signature_valid(request, params):
        logger.warning("Invalid Twilio signature on status callback, ignoring")
        log_request_data(request, result="invalid_signature")
        return PlainTextResponse("OK")

    callback = StatusCallbackForm.model_validate(params)
    log_request_data(request, message_id=callback.message_sid, result="accepted")
    background_tasks.add_task(deps.status_processor.on_status_callback, callback)
    return PlainTextResponse("OK")


@app.post("/webhooks/twilio/incoming")
async def incoming_message_webhook(
    request: Request,
    deps: Deps = Depends(get_deps),
) -> Response:
    """
    Inbound SMS/WhatsApp message. Always answered with empty TwiML so the
    provider never retries.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if not twilio_signature_valid(request, params):
        logger.warning("Invalid Twilio signature on inbound message, ignoring")
        log_request_data(request, result="invalid_signature")
        return Response(content=EMPTY_TWIML, media_type="text/xml")

    message = InboundMessageForm.model_validate(params)
    result = await run_in_threadpool(deps.ingestor.on_inbound_message, message)
    log_request_data(request, message_id=message.message_sid, result=result)
    return Response(content=EMPTY_TWIML, media_type="text/xml")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - messages_routed_total, status_callbacks_total, inbound_messages_total,
      reminders_sent_total, sms_fallbacks_total, dead_letters_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
