from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from thesis_validator.errors import ApiError
from thesis_validator.routes import contradictions, documents, expert_calls, internal, jobs, metrics, research, stress_tests
from thesis_validator.routes._deps import error_response, request_id_from_request, trace_id_from_request
from thesis_validator.schemas import success_envelope
from thesis_validator.security import JwtSecurityConfig, parse_and_validate_bearer_token, redact_sensitive
from thesis_validator.services import ServiceContainer, build_services_from_env

logger = logging.getLogger(__name__)

ROUTERS = (
    stress_tests.router,
    documents.router,
    expert_calls.router,
    research.router,
    metrics.router,
    contradictions.router,
    jobs.router,
    internal.router,
)

_AUTH_EXEMPT_PREFIXES = ("/api/v1/internal/",)
_AUTH_EXEMPT_PATHS = frozenset({"/api/v1/health"})


def _needs_auth(path: str) -> bool:
    if not path.startswith("/api/v1/") or path in _AUTH_EXEMPT_PATHS:
        return False
    return not path.startswith(_AUTH_EXEMPT_PREFIXES)


def _cors_origins() -> list[str]:
    raw = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _api_error_response(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
    )


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if not location:
        return "invalid payload"
    return f"invalid payload: {location} {first.get('msg', '')}".strip()


class _RequestGate:
    """Assigns correlation ids and authenticates API calls before routing."""

    def __init__(self, cfg: JwtSecurityConfig) -> None:
        self.cfg = cfg

    def log_blocked(self, request: Request, *, code: str, detail: str) -> None:
        headers = dict(request.headers.items())
        if self.cfg.log_redaction_enabled:
            headers = redact_sensitive(headers)
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            code,
            request.url.path,
            trace_id_from_request(request),
            detail,
            headers,
        )

    def assign_ids(self, request: Request) -> str:
        supplied_trace = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = supplied_trace or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.auth_subject = "anonymous"
        return supplied_trace

    def authenticate(self, request: Request) -> None:
        if self.cfg.enabled and _needs_auth(request.url.path):
            ctx = parse_and_validate_bearer_token(authorization=request.headers.get("Authorization"), cfg=self.cfg)
            request.state.auth_subject = ctx.subject
        else:
            request.state.auth_subject = request.headers.get("x-subject", "").strip() or "anonymous"

    @staticmethod
    def stamp(request: Request, response):
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    async def __call__(self, request: Request, call_next):
        supplied_trace = self.assign_ids(request)
        if self.cfg.trace_id_strict_required and not supplied_trace and _needs_auth(request.url.path):
            missing = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            return self.stamp(request, missing)
        try:
            self.authenticate(request)
            response = await call_next(request)
        except ApiError as exc:
            self.log_blocked(request, code=exc.code, detail=exc.message)
            response = _api_error_response(request, exc)
        return self.stamp(request, response)


def _install_error_handlers(app: FastAPI, gate: _RequestGate) -> None:
    security_codes = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN"}

    async def on_api_error(request: Request, exc: ApiError) -> JSONResponse:
        if exc.code in security_codes:
            gate.log_blocked(request, code=exc.code, detail=exc.message)
        return _api_error_response(request, exc)

    async def on_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message=_validation_message(exc),
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    async def on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        not_found = exc.status_code == 404
        return error_response(
            request,
            code="REQ_NOT_FOUND" if not_found else "REQ_HTTP_ERROR",
            message="resource not found" if not_found else str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    app.add_exception_handler(ApiError, on_api_error)
    app.add_exception_handler(RequestValidationError, on_invalid_request)
    app.add_exception_handler(StarletteHTTPException, on_http_error)


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    app = FastAPI(title="Thesis Validator API", version="0.1.0")
    cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = cfg
    app.state.services = services if services is not None else build_services_from_env()

    origins = _cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    gate = _RequestGate(cfg)
    app.middleware("http")(gate)
    _install_error_handlers(app, gate)

    @app.get("/healthz")
    def liveness(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def readiness(request: Request) -> dict[str, object]:
        container: ServiceContainer = request.app.state.services
        return success_envelope({"status": "ok", "queues": container.work_queue.depths()}, trace_id_from_request(request))

    for router in ROUTERS:
        app.include_router(router)
    return app


app = create_app()
