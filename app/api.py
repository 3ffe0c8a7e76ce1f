# app/api.py
# API interna (/api): health-checks, técnicos, logs e emissão de token.
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from app import db
from app.auth import check_root_credentials, issue_token
from app.config import settings
from app.schemas import LogCreate, TechnicianCreate, TechnicianUpdate, TokenRequest
from app.teams_graph import GraphClient, SharepointClient
from app.ticket_client import TicketClient

router = APIRouter(prefix="/api")

ticket_client = TicketClient(settings.api_endpoint, settings.api_username, settings.api_password)
graph_client = GraphClient(settings)
sharepoint_client = SharepointClient(settings)


def _send(status: int, **data: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"status": status, "data": data})


def _result(result: Any) -> JSONResponse:
    return _send(200, result=result)


def _error(error: Any, fn: str) -> JSONResponse:
    logger.error(f"[api] {fn} error: {error}")
    return _send(500, error=str(error))


def _parse_id(raw: str) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except Exception:
        return None


# ---------------- health ----------------

@router.get("/health")
def health():
    return _send(200, message="Bot is running")


@router.get("/db/health")
def db_health():
    try:
        db.db_health()
        return _send(200, message="Database connection successful")
    except Exception as e:
        logger.error(f"[api] db health falhou: {e}")
        return _send(503, message="Database connection failed", error=str(e))


@router.get("/ticket/health")
def ticket_health():
    cookie = ticket_client.health()
    if not cookie:
        return _send(503, message="API connection failed")
    return _send(200, message="API connection successful")


@router.get("/graph/health")
def graph_health():
    me = graph_client.me()
    if not me:
        return _send(503, message="Microsoft Graph API connection failed")
    return _send(200, message="API connection successful", me=me)


@router.get("/sharepoint/health")
def sharepoint_health():
    try:
        sharepoint_client.health()
        return _send(200, message="Sharepoint connection successful")
    except Exception as e:
        logger.error(f"[api] sharepoint health falhou: {e}")
        return _send(503, message="Sharepoint connection failed")


# ---------------- token ----------------

@router.post("/token")
async def create_token(request: Request):
    body = await _json_body(request)
    if not isinstance(body, dict) or not body:
        return _send(400, message="Username and password are required")
    try:
        creds = TokenRequest.model_validate(body)
    except ValidationError:
        return _send(400, message="Username and password are required")

    if not check_root_credentials(creds.username, creds.password):
        logger.warning("[api] credenciais inválidas em /api/token")
        return _send(401, message="Invalid username or password")

    return _send(200, token=issue_token(creds.username, settings.jwt_secret))


# ---------------- técnicos ----------------

@router.get("/technicians")
def list_technicians():
    try:
        return _result(db.technicians())
    except Exception as e:
        return _error(e, "list_technicians")


@router.get("/technicians/{technician_id}")
def get_technician(technician_id: str):
    tid = _parse_id(technician_id)
    if tid is None:
        return _send(400, error="Request parameter 'id' is required")
    try:
        return _result(db.technician(tid))
    except Exception as e:
        return _error(e, "get_technician")


@router.post("/technicians")
async def create_technician(request: Request):
    body = await _json_body(request)
    try:
        payload = TechnicianCreate.model_validate(body if isinstance(body, dict) else {})
    except ValidationError:
        return _send(400, error="Field 'email' is required")
    try:
        return _result(db.create_technician(payload.email))
    except Exception as e:
        return _error(e, "create_technician")


@router.put("/technicians/{technician_id}")
async def update_technician(technician_id: str, request: Request):
    tid = _parse_id(technician_id)
    if tid is None:
        return _send(400, error="Request parameter 'id' is required")
    body = await _json_body(request)
    if not isinstance(body, dict) or not body:
        return _send(400, error="Request body is required")
    try:
        payload = TechnicianUpdate.model_validate(body)
    except ValidationError as e:
        return _send(400, error=e.errors()[0].get("msg", "Invalid body"))
    try:
        return _result(db.update_technician(tid, email=payload.email, activo=payload.activo))
    except Exception as e:
        return _error(e, "update_technician")


@router.delete("/technicians/{technician_id}")
def delete_technician(technician_id: str):
    tid = _parse_id(technician_id)
    if tid is None:
        return _send(400, error="Request parameter 'id' is required")
    try:
        return _result(db.delete_technician(tid))
    except Exception as e:
        return _error(e, "delete_technician")


# ---------------- logs ----------------

@router.get("/logs")
def list_logs():
    try:
        return _result(db.logs())
    except Exception as e:
        return _error(e, "list_logs")


@router.post("/logs")
async def create_log(request: Request):
    body = await _json_body(request)
    try:
        payload = LogCreate.model_validate(body if isinstance(body, dict) else {})
    except ValidationError:
        return _send(400, error="Field 'message' is required")
    try:
        return _result(db.create_log(payload.message))
    except Exception as e:
        return _error(e, "create_log")
