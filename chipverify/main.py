import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .audit_backends import get_audit_mirror
from .config import Settings, load_settings
from .exceptions import AuditWriteError, ExportUnsupported
from .logging_config import configure_logging, set_request_id
from .models import parse_verify_request
from .registry import ChipRegistry, get_registry
from .security import extract_client_ip
from .signature import get_signature_verifier
from .util import constant_time_compare
from .verification import SERVER_ERROR, ChipVerifier

logger = logging.getLogger(__name__)

app = FastAPI(title="Chip Authenticity Verification")

SETTINGS: Optional[Settings] = None
REGISTRY: Optional[ChipRegistry] = None
VERIFIER: Optional[ChipVerifier] = None
VERIFIER_MODE: Optional[str] = None

MAX_REQUEST_ID_LENGTH = 128


@app.on_event("startup")
def _startup(settings: Optional[Settings] = None, registry: Optional[ChipRegistry] = None):
    global SETTINGS, REGISTRY, VERIFIER, VERIFIER_MODE
    SETTINGS = settings or load_settings()
    configure_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    REGISTRY = registry or get_registry(SETTINGS)
    signatures = get_signature_verifier(SETTINGS)
    VERIFIER_MODE = signatures.mode
    VERIFIER = ChipVerifier(REGISTRY, signatures, mirror=get_audit_mirror(SETTINGS))
    logger.info("chip verifier ready: env=%s mode=%s registry=%s",
                SETTINGS.env, VERIFIER_MODE, REGISTRY.name)


def cors_headers(request: Request) -> Dict[str, str]:
    allowed = SETTINGS.cors_allow_origin if SETTINGS else "*"
    origin = (request.headers.get("origin") or "*") if allowed == "*" else allowed
    return {
        "Access-Control-Allow-Origin": origin,
        "Vary": "Origin",
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
        "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
        "Access-Control-Max-Age": "86400",
    }


def json_response(request: Request, status: int, data: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status, content=data, headers=cors_headers(request))


@app.middleware("http")
async def _request_context(request: Request, call_next):
    inbound = request.headers.get("x-request-id", "")
    request_id = set_request_id(inbound if 0 < len(inbound) <= MAX_REQUEST_ID_LENGTH else None)
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


async def _verify(request: Request, raw: Any) -> JSONResponse:
    req = parse_verify_request(raw)
    ip = extract_client_ip(request.headers, request.client.host if request.client else None)
    user_agent = request.headers.get("user-agent")
    try:
        outcome = await run_in_threadpool(VERIFIER.verify, req, ip, user_agent)
    except AuditWriteError as e:
        logger.exception("scan for tag %s classified %s but not audited", req.a, e.state)
        return json_response(request, 500, {"ok": False, "error": SERVER_ERROR})
    except Exception:
        logger.exception("chip verification failed for tag %s", req.a)
        return json_response(request, 500, {"ok": False, "error": SERVER_ERROR})
    return json_response(request, outcome.status_code, outcome.to_dict())


@app.options("/verify-chip")
def verify_chip_preflight(request: Request):
    return Response(status_code=204, headers=cors_headers(request))


@app.get("/verify-chip")
async def verify_chip_get(request: Request):
    return await _verify(request, dict(request.query_params))


@app.post("/verify-chip")
async def verify_chip_post(request: Request):
    # A body that is not JSON is treated as empty
    try:
        raw = await request.json()
    except ValueError:
        raw = {}
    return await _verify(request, raw)


@app.get("/health")
def health():
    try:
        stats = REGISTRY.stats()
    except Exception:
        logger.exception("health check failed")
        return JSONResponse(status_code=503, content={"ok": False, "error": SERVER_ERROR})
    return {"ok": True, "backend": REGISTRY.name, "verifier_mode": VERIFIER_MODE, "stats": stats}


@app.get("/audit/scan_events")
def audit_scan_events(
    request: Request,
    chip_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000)
):
    token = SETTINGS.audit_export_token
    presented = request.headers.get("x-audit-token", "")
    if not token or not constant_time_compare(presented, token):
        raise HTTPException(403, "FORBIDDEN")
    try:
        return REGISTRY.export_scan_events(chip_id, limit)
    except ExportUnsupported:
        raise HTTPException(501, "EXPORT_UNSUPPORTED")
