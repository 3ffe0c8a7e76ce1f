# app/auth.py
# JWT da API interna (emissão em /api/token + middleware de verificação).
from __future__ import annotations

import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import Request
from fastapi.responses import JSONResponse
from loguru import logger

from app.config import settings

JWT_ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=1)

# trechos do path liberados sem token (nunca o host)
PUBLIC_PATH_MARKERS = ("/api/token", "/api/messages", "health")


def issue_token(username: str, secret: str) -> str:
    payload = {
        "username": username,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + TOKEN_TTL,
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def verify_token(token: str, secret: str) -> Dict[str, Any]:
    return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])


def check_root_credentials(username: str, password: str) -> bool:
    expected_user = settings.jwt_root_username
    expected_pass = settings.jwt_root_password
    if not expected_user or not expected_pass:
        logger.warning("[auth] JWT_ROOT_USERNAME/JWT_ROOT_PASSWORD não configurados")
        return False
    user_ok = hmac.compare_digest(username.encode("utf-8"), expected_user.encode("utf-8"))
    pass_ok = hmac.compare_digest(password.encode("utf-8"), expected_pass.encode("utf-8"))
    return user_ok and pass_ok


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"status": 401, "data": {"message": message}})


def is_public(path: str) -> bool:
    return any(marker in path for marker in PUBLIC_PATH_MARKERS)


async def jwt_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api") or is_public(path):
        return await call_next(request)

    auth_header = request.headers.get("authorization")
    if auth_header is None:
        logger.warning(f"[auth] {request.method} {path}: sem header Authorization")
        return _unauthorized("Authorization header is not valid")

    token = auth_header.strip()
    if not token:
        return _unauthorized("No token provided")

    if not token.lower().startswith("bearer"):
        logger.warning(f"[auth] {request.method} {path}: token sem prefixo Bearer")
        return _unauthorized('Token must be of type "Bearer"')

    token = token[len("bearer"):].strip()
    try:
        request.state.jwt = verify_token(token, settings.jwt_secret)
    except jwt.PyJWTError as e:
        logger.warning(f"[auth] {request.method} {path}: token inválido ({e})")
        return _unauthorized(str(e))
    except Exception as e:
        logger.error(f"[auth] {request.method} {path}: falha ao validar token: {e}")
        return _unauthorized("Invalid token")

    return await call_next(request)
