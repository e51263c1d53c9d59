
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from typing import Annotated
from fastapi.middleware.cors import CORSMiddleware
from app.core.settings import settings, get_lms_settings
from app.core.logging import setup_logging
from app.api.schemas import (
    BulkRequest,
    BulkResponse,
    ChatRequest,
    ChatResponse,
    EnrollmentStatusRequest,
    EnrollmentStatusResponse,
    ResolveRequest,
    ResourceView,
    UserEnrollmentsRequest,
    UserEnrollmentsResponse,
)
from app.api.deps import get_lms_service
from app.core.observability import TraceManager
from app.lms.errors import (
    AmbiguousMatch,
    AuthenticationFailed,
    GatewayUnavailable,
    RemoteError,
    ResourceNotFound,
)
from app.services.lms import (
    LMSService,
    bulk_result_data,
    enrollment_status_data,
    resource_data,
    user_enrollments_data,
)
from contextlib import asynccontextmanager
import uuid
import logging
import time

# Setup
setup_logging()
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: missing or blank LMS credentials abort here
    lms_settings = get_lms_settings()
    app.state.lms = LMSService.from_settings(lms_settings)
    logger.info(f"Startup complete (env={settings.env})")

    yield

    # Shutdown
    await app.state.lms.aclose()

app = FastAPI(title="LMS Operations Assistant", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware for Trace ID
@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id", str(uuid.uuid4()))
    TraceManager.set_trace_id(trace_id)
    request.state.trace_id = trace_id

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    response.headers["X-Trace-Id"] = trace_id
    TraceManager.info(f"Request: {request.method} {request.url.path}", status=response.status_code, duration_ms=duration*1000)
    return response

# Error mapping
def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})

@app.exception_handler(ResourceNotFound)
async def not_found_handler(request: Request, exc: ResourceNotFound):
    return _error(404, str(exc))

@app.exception_handler(AmbiguousMatch)
async def ambiguous_handler(request: Request, exc: AmbiguousMatch):
    return _error(409, str(exc))

@app.exception_handler(AuthenticationFailed)
async def auth_failed_handler(request: Request, exc: AuthenticationFailed):
    logger.error(f"LMS authentication failed: {exc}")
    return _error(502, "Authentication against the LMS failed")

@app.exception_handler(GatewayUnavailable)
async def unavailable_handler(request: Request, exc: GatewayUnavailable):
    logger.error(f"LMS unreachable: {exc}")
    return _error(503, "The LMS platform is unreachable")

@app.exception_handler(RemoteError)
async def remote_error_handler(request: Request, exc: RemoteError):
    return _error(502, exc.describe())

# Routes
@app.get("/health")
async def health_check():
    return {"status": "healthy", "env": settings.env}

@app.post("/resolve", response_model=ResourceView)
async def resolve_resource(
    resolve_request: ResolveRequest,
    lms: Annotated[LMSService, Depends(get_lms_service)]
):
    try:
        resource = await lms.resolve(
            resolve_request.kind,
            resolve_request.identifier,
            require_confident=resolve_request.require_confident,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return resource_data(resource)

@app.post("/bulk", response_model=BulkResponse)
async def run_bulk(
    bulk_request: BulkRequest,
    lms: Annotated[LMSService, Depends(get_lms_service)]
):
    result = await lms.run_bulk(
        bulk_request.kind,
        bulk_request.target,
        bulk_request.users,
        bulk_request.operation,
        bulk_request.options.to_options(),
    )
    return bulk_result_data(result)

@app.post("/enrollment-status", response_model=EnrollmentStatusResponse)
async def enrollment_status(
    status_request: EnrollmentStatusRequest,
    lms: Annotated[LMSService, Depends(get_lms_service)]
):
    try:
        status = await lms.enrollment_status(status_request.kind, status_request.user, status_request.target)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return enrollment_status_data(status)

@app.post("/user-enrollments", response_model=UserEnrollmentsResponse)
async def user_enrollments(
    listing_request: UserEnrollmentsRequest,
    lms: Annotated[LMSService, Depends(get_lms_service)]
):
    try:
        listing = await lms.user_enrollments(listing_request.user)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return user_enrollments_data(listing)

@app.post("/chat", response_model=ChatResponse)
async def chat_endpoint(
    chat_request: ChatRequest,
    request: Request,
    lms: Annotated[LMSService, Depends(get_lms_service)]
):
    logger.info(f"Received chat request (session: {chat_request.session_id})")

    try:
        reply = await lms.handle_message(chat_request.message)
    except (AuthenticationFailed, GatewayUnavailable) as e:
        logger.error(f"Chat request failed against the LMS: {e}")
        reply = {
            "message": "I can't reach the LMS right now. Please try again shortly.",
            "intent": "unknown",
            "status": "error",
            "data": {},
        }

    return ChatResponse(session_id=chat_request.session_id, trace_id=request.state.trace_id, **reply)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
