from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from household_ledger.admin import UserAdminService
from household_ledger.config import Settings, get_settings
from household_ledger.exceptions import (
    CommitError,
    FileRejectedError,
    InvalidRowsError,
    LedgerError,
    MappingError,
    RateLimitedError,
    RequestRejected,
    SessionNotFoundError,
)
from household_ledger.external_api import ExternalQueryService
from household_ledger.goals import enrich_goals
from household_ledger.imports import ImportService, mapping_state, session_summary
from household_ledger.ingest import TransactionIngestor
from household_ledger.logging_config import configure_logging
from household_ledger.models import MappingRequest, TypeRequest
from household_ledger.ratelimit import (
    DuplicateGuard,
    FailureBlocker,
    RateLimiter,
    SubmissionThrottle,
)
from household_ledger.sessions import ImportSessionStore
from household_ledger.store import FinanceStore, InMemoryFinanceStore
from household_ledger.tracing import get_tracer
from household_ledger.verification import PhoneVerificationService

settings = get_settings()
configure_logging(settings.app.log_level, json_output=not settings.app.debug_mode)
logger = structlog.get_logger(__name__)


@dataclass
class Services:
    store: FinanceStore
    imports: ImportService
    ingestor: TransactionIngestor
    verification: PhoneVerificationService
    ip_limiter: RateLimiter
    admin: UserAdminService
    external: ExternalQueryService


def create_services(store: FinanceStore, settings: Settings) -> Services:
    security = settings.security
    import_settings = settings.imports
    return Services(
        store=store,
        imports=ImportService(
            store=store,
            sessions=ImportSessionStore(import_settings.progress_dir),
            settings=import_settings,
            tracer=get_tracer(),
            throttle=SubmissionThrottle(import_settings.commit_cooldown_seconds),
        ),
        ingestor=TransactionIngestor(
            store=store,
            request_limiter=RateLimiter(security.rate_limit_per_minute),
            failures=FailureBlocker(),
            duplicates=DuplicateGuard(security.dedup_window_seconds),
        ),
        verification=PhoneVerificationService(
            store=store,
            secret=security.challenge_secret,
            code_limiter=RateLimiter(security.code_rate_limit_per_minute),
            failures=FailureBlocker(),
            challenge_ttl=security.challenge_ttl_seconds,
            webhook_timeout=security.webhook_timeout_seconds,
        ),
        ip_limiter=RateLimiter(security.rate_limit_per_minute),
        admin=UserAdminService(store),
        external=ExternalQueryService(
            store=store,
            admin_token=security.external_api_token,
            ip_limiter=RateLimiter(security.rate_limit_per_minute),
        ),
    )


services = create_services(InMemoryFinanceStore(), settings)

app = FastAPI(title="Household Ledger API")

# CORS middleware for the web frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.app.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS = {
    FileRejectedError: 400,
    MappingError: 400,
    SessionNotFoundError: 404,
    InvalidRowsError: 400,
    CommitError: 409,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, RequestRejected):
        body: Dict[str, Any] = {"detail": exc.message}
        if exc.details:
            body["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=body)

    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    body = {"detail": str(exc)}
    if isinstance(exc, MappingError) and exc.missing_fields:
        body["missing_fields"] = exc.missing_fields
    if status == 500:
        logger.error("unhandled_ledger_error", path=request.url.path, error=str(exc))
        body = {"detail": "Internal server error."}
    return JSONResponse(status_code=status, content=body)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header.")
    return authorization[len("Bearer "):]


def current_user(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller's user id from the session access token."""
    user_id = services.store.resolve_access_token(bearer_token(authorization))
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body.")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body.")
    return body


@app.get("/")
def read_root():
    return {"message": "Household Ledger API"}


@app.post("/imports/upload")
async def upload_file(file: UploadFile = File(...), user_id: str = Depends(current_user)):
    """Upload a CSV/Excel file and open an import session"""
    contents = await file.read()
    session = services.imports.upload(user_id, file.filename or "", contents)
    return {
        "message": "File uploaded successfully",
        **session_summary(session),
    }


@app.get("/imports/{session_id}")
def get_import(session_id: str, user_id: str = Depends(current_user)):
    session = services.imports.get(user_id, session_id)
    return {
        **session_summary(session),
        "errors": [e.model_dump() for e in session.errors],
    }


@app.post("/imports/{session_id}/type")
def set_import_type(session_id: str, request: TypeRequest, user_id: str = Depends(current_user)):
    """Declare whether the file holds expenses or income"""
    session = services.imports.set_type(user_id, session_id, request.type)
    return {"session_id": session.id, "type": session.type.value}


@app.post("/imports/{session_id}/mapping")
def map_column(session_id: str, request: MappingRequest, user_id: str = Depends(current_user)):
    """Map one file column to a field (or "ignored")"""
    session = services.imports.assign(user_id, session_id, request.column_index, request.field)
    return {"session_id": session.id, **mapping_state(session)}


@app.post("/imports/{session_id}/preview")
def preview_import(session_id: str, user_id: str = Depends(current_user)):
    """Validate all rows and return the error worklist and a preview grid"""
    return services.imports.preview(user_id, session_id)


@app.post("/imports/{session_id}/commit")
def commit_import(session_id: str, user_id: str = Depends(current_user)):
    """Insert all rows in one batch"""
    result = services.imports.commit(user_id, session_id)
    return result.model_dump(mode="json")


@app.get("/import-logs")
def list_import_logs(user_id: str = Depends(current_user)):
    logs = services.store.list_import_logs(user_id)
    return {"logs": [log.model_dump(mode="json") for log in logs]}


@app.post("/ingest/transaction", status_code=201)
async def ingest_transaction(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_token: Optional[str] = Header(None),
):
    """Create one transaction on behalf of the WhatsApp/AI integration"""
    access_token = bearer_token(authorization)
    body = await json_body(request)
    record = services.ingestor.ingest(
        body,
        access_token=access_token,
        user_token=x_user_token,
        client_ip=client_ip(request),
    )
    return {
        "success": True,
        "message": "Transaction created successfully.",
        "transaction": record.model_dump(
            mode="json", include={"id", "type", "date", "amount", "notes"}
        ),
    }


@app.post("/ai/enable")
async def enable_ai(request: Request, authorization: Optional[str] = Header(None)):
    """Phone verification actions: status, generate-code, validate-code"""
    ip = client_ip(request)
    if services.ip_limiter.hit(f"ip:{ip}"):
        raise RateLimitedError()
    user_id = current_user(authorization)
    body = await json_body(request)

    action = body.get("action")
    verification = services.verification
    if action == "status":
        return verification.status(user_id)
    if action == "generate-code":
        return verification.generate_code(user_id, str(body.get("phone") or ""))
    if action == "validate-code":
        return verification.validate_code(
            user_id,
            code=str(body.get("code") or ""),
            challenge=str(body.get("challenge") or ""),
            raw_phone=str(body.get("phone") or ""),
            client_ip=ip,
        )
    raise HTTPException(status_code=400, detail="Unknown action")


@app.get("/goals")
def list_goals(user_id: str = Depends(current_user)):
    """Goals with their dynamic current value and progress percentage"""
    store = services.store
    enriched = enrich_goals(
        store.list_goals(user_id),
        store.list_transactions(user_id),
        store.list_assets(user_id),
    )
    return {"goals": [g.model_dump(mode="json") for g in enriched]}


@app.post("/admin/users")
async def admin_users(request: Request, user_id: str = Depends(current_user)):
    """Admin actions: list, activate, deactivate, delete, revoke-token, regenerate-token, block-api, remove-phone"""
    services.admin.require_admin(user_id)
    body = await json_body(request)
    target = body.get("userId")
    return services.admin.handle(
        user_id, body.get("action"), str(target) if target is not None else None
    )


@app.post("/external/query")
async def external_query(request: Request, authorization: Optional[str] = Header(None)):
    """Read a household's summary or transactions by phone number (admin token)"""
    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    services.external.authorize(token, client_ip(request))
    body = await json_body(request)
    return services.external.query(body)
