import logging
import secrets
from contextlib import asynccontextmanager, contextmanager
from typing import Optional

from fastapi import FastAPI, Response, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from coursechat.auth import (
    UserDirectory,
    claimed_author,
    current_author,
    get_options,
    get_user_directory,
    login_session,
    logout_session,
    session_author,
)
from coursechat.config import settings
from coursechat.errors import (
    CourseChatError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from coursechat.fallback import FallbackPolicy
from coursechat.gateway import Author, GatewayOptions, IdentityMode, MessageGateway
from coursechat.logging_utils import setup_logging, RequestLoggingMiddleware, log_operation_data
from coursechat.metrics import record_message_operation, get_metrics, get_metrics_content_type
from coursechat.schemas import (
    ErrorResponse,
    HealthResponse,
    LoginRequest,
    Message,
    MessageCreateRequest,
    MessagePatch,
    Preference,
    PreferenceRequest,
    SuccessResponse,
    UserResponse,
)
from coursechat.storage import init_db, check_db_health, get_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Shared by all requests so fallback answers stay identical between polls
fallback_policy = FallbackPolicy(default_course=settings.DEFAULT_COURSE)

OPERATION_RESULTS = {
    ValidationError: "validation_error",
    UnauthorizedError: "unauthorized",
    ForbiddenError: "forbidden",
    NotFoundError: "not_found",
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Missing or invalid field"},
    401: {"model": ErrorResponse, "description": "Not authenticated"},
    403: {"model": ErrorResponse, "description": "Not the message author"},
    404: {"model": ErrorResponse, "description": "Unknown message"},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables. The service keeps serving fallback data when
    the store is unreachable, so a failed init is only logged.
    """
    if init_db():
        logger.info("Database ready for use")
    else:
        logger.warning("Server running without database connection - using fallback data")
    yield


app = FastAPI(
    title="Course Chat API",
    description="Course-scoped chat messages with soft delete and per-user course preference",
    version="1.0.0",
    lifespan=lifespan,
)

session_secret = settings.SESSION_SECRET
if not session_secret:
    logger.warning("SESSION_SECRET not configured, sessions will not survive a restart")
    session_secret = secrets.token_urlsafe(32)

app.add_middleware(
    SessionMiddleware,
    secret_key=session_secret,
    max_age=settings.SESSION_MAX_AGE,
    same_site="lax",
    https_only=False,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-Id", "X-User-Name"],
)
# Added last so it wraps every other middleware
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(CourseChatError)
async def course_chat_error_handler(request: Request, exc: CourseChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def get_gateway(
    db: Session = Depends(get_db),
    options: GatewayOptions = Depends(get_options),
) -> MessageGateway:
    return MessageGateway(db, options=options, policy=fallback_policy)


@contextmanager
def tracked_operation(
    request: Request,
    operation: str,
    message_id: Optional[str] = None,
    course_id: Optional[str] = None,
):
    """Record metrics and request-log fields for one write operation."""
    try:
        yield
    except CourseChatError as e:
        result = OPERATION_RESULTS.get(type(e), "error")
        record_message_operation(operation, result)
        log_operation_data(request, operation, result, message_id=message_id, course_id=course_id)
        raise
    record_message_operation(operation, "ok")
    log_operation_data(request, operation, "ok", message_id=message_id, course_id=course_id)


def preference_owner(
    author: Author,
    options: GatewayOptions,
    requested_user_id: Optional[str],
) -> str:
    """
    User whose preference is read or written.

    Only client-asserted identities may name another user; otherwise the
    requested user must be the acting one.
    """
    if not requested_user_id:
        return author.user_id
    if options.identity_mode == IdentityMode.SHARED:
        return requested_user_id
    if requested_user_id != author.user_id:
        raise ForbiddenError("You can only access your own preferences")
    return requested_user_id


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. SESSION_SECRET is set when login is required
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable). Message routes keep
    answering with fallback data while not ready.
    """
    if settings.REQUIRE_AUTH and not settings.SESSION_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="SESSION_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Session Routes
# =============================================================================

@app.post("/api/login", response_model=UserResponse, responses=ERROR_RESPONSES)
async def login(
    request: Request,
    body: LoginRequest,
    directory: UserDirectory = Depends(get_user_directory),
) -> UserResponse:
    """Check credentials and store the user (without password) in the session."""
    author = directory.authenticate(body.username, body.password)
    login_session(request, author)
    logger.info(f"User logged in: {author.user_id}")
    return UserResponse(username=author.user_id, display_name=author.display_name)


@app.post("/api/logout", response_model=SuccessResponse)
async def logout(request: Request) -> SuccessResponse:
    logout_session(request)
    return SuccessResponse()


@app.get("/api/user", response_model=UserResponse, responses=ERROR_RESPONSES)
async def current_user(request: Request) -> UserResponse:
    """The logged-in user of this session."""
    author = session_author(request)
    if author is None:
        raise UnauthorizedError("Not authenticated")
    return UserResponse(username=author.user_id, display_name=author.display_name)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages/{course_id}", response_model=list[Message], responses=ERROR_RESPONSES)
async def list_messages(
    course_id: str,
    author: Author = Depends(current_author),
    gateway: MessageGateway = Depends(get_gateway),
) -> list[Message]:
    """
    All messages of a course ordered by timestamp (oldest first).

    Deleted messages are included with text "Message deleted". When the
    store is unreachable a single welcome message is returned instead.
    """
    messages = gateway.list_messages(course_id)
    logger.info(f"GET /api/messages/{course_id}: returned {len(messages)} messages to {author.user_id}")
    return messages


@app.post(
    "/api/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_message(
    request: Request,
    body: MessageCreateRequest,
    author: Author = Depends(current_author),
    options: GatewayOptions = Depends(get_options),
    gateway: MessageGateway = Depends(get_gateway),
) -> Message:
    """
    Post a message to a course.

    A 201 does not imply durable storage: the message is returned even if
    the store rejected the write.
    """
    if options.identity_mode == IdentityMode.SHARED and body.user_id:
        author = claimed_author(body.user_id, body.display_name)

    with tracked_operation(request, "create", course_id=body.course_id):
        message = gateway.create_message(body.course_id, body.text, author)
    return message


@app.put("/api/messages/{message_id}", response_model=Message, responses=ERROR_RESPONSES)
async def update_message(
    request: Request,
    message_id: str,
    patch: MessagePatch,
    author: Author = Depends(current_author),
    gateway: MessageGateway = Depends(get_gateway),
) -> Message:
    """Apply the fields present in the body; only the author may do this."""
    with tracked_operation(request, "update", message_id=message_id):
        message = gateway.update_message(message_id, author, patch)
    return message


@app.delete("/api/messages/{message_id}", response_model=SuccessResponse, responses=ERROR_RESPONSES)
async def delete_message(
    request: Request,
    message_id: str,
    author: Author = Depends(current_author),
    gateway: MessageGateway = Depends(get_gateway),
) -> SuccessResponse:
    """Soft-delete a message; only the author may do this."""
    with tracked_operation(request, "delete", message_id=message_id):
        gateway.delete_message(message_id, author)
    return SuccessResponse()


# =============================================================================
# Preference Routes
# =============================================================================

@app.get("/api/preferences", response_model=Preference, responses=ERROR_RESPONSES)
async def get_own_preference(
    author: Author = Depends(current_author),
    gateway: MessageGateway = Depends(get_gateway),
) -> Preference:
    """Selected course of the acting user, "mathematik" by default."""
    return gateway.get_preference(author.user_id)


@app.get("/api/preferences/{user_id}", response_model=Preference, responses=ERROR_RESPONSES)
async def get_user_preference(
    user_id: str,
    author: Author = Depends(current_author),
    options: GatewayOptions = Depends(get_options),
    gateway: MessageGateway = Depends(get_gateway),
) -> Preference:
    return gateway.get_preference(preference_owner(author, options, user_id))


@app.post(
    "/api/preferences",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def save_preference(
    request: Request,
    body: PreferenceRequest,
    author: Author = Depends(current_author),
    options: GatewayOptions = Depends(get_options),
    gateway: MessageGateway = Depends(get_gateway),
) -> SuccessResponse:
    """Remember the selected course. Acknowledged even if the store is down."""
    with tracked_operation(request, "set_preference", course_id=body.selected_course):
        user_id = preference_owner(author, options, body.user_id)
        gateway.set_preference(user_id, body.selected_course)
    return SuccessResponse()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics:
    - http_requests_total
    - request_latency_seconds
    - message_operations_total
    - store_fallbacks_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
