# app/config.py
from __future__ import annotations

import os
from typing import Any, Dict, List

from dotenv import load_dotenv

load_dotenv()


def _env(*keys: str, default: str = "") -> str:
    for k in keys:
        v = os.getenv(k)
        if v is not None and str(v).strip() != "":
            return v.strip()
    return default


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(key: str) -> List[str]:
    return [s.strip() for s in (os.getenv(key) or "").split(",") if s.strip()]


class Settings:
    def __init__(self) -> None:
        # Bot
        self.bot_id: str = _env("BOT_ID")
        self.bot_password: str = _env("BOT_PASSWORD")
        self.bot_domain: str = _env("BOT_DOMAIN")
        self.bot_type: str = _env("BOT_TYPE", default="MultiTenant")
        self.bot_connection_name: str = _env("BOT_CONNECTION_NAME")

        # AAD app (Graph / Sharepoint)
        self.client_id: str = _env("AAD_APP_CLIENT_ID")
        self.tenant_id: str = _env("AAD_APP_TENANT_ID")
        self.client_secret: str = _env("AAD_APP_CLIENT_SECRET")
        self.authority_host: str = _env(
            "AAD_APP_OAUTH_AUTHORITY_HOST", default="https://login.microsoftonline.com"
        ).rstrip("/")
        self.authority: str = _env(
            "AAD_APP_OAUTH_AUTHORITY", default=f"{self.authority_host}/{self.tenant_id}"
        ).rstrip("/")
        self.scopes: List[str] = _env_list("AAD_APP_SCOPES")

        # Teams app
        self.teams_app_id: str = _env("TEAMS_APP_ID")
        self.teams_app_catalog_id: str = _env("TEAMS_APP_CATALOG_ID")
        self.teams_app_tenant_id: str = _env("TEAMS_APP_TENANT_ID")

        # Ticketing API
        self.api_endpoint: str = _env("API_ENDPOINT").rstrip("/")
        self.api_username: str = _env("API_USERNAME")
        self.api_password: str = _env("API_PASSWORD")

        # DB (sqlite; host/port/user/name kept for deployments that still export them)
        self.db_path: str = _env("DB_PATH", default="ticketbot.db")
        self.db_host: str = _env("DB_HOST")
        self.db_port: str = _env("DB_PORT")
        self.db_user: str = _env("DB_USER")
        self.db_password: str = _env("DB_PASSWORD")
        self.db_name: str = _env("DB_NAME")

        # Graph delegated account
        self.graph_username: str = _env("GRAPH_USERNAME")
        self.graph_password: str = _env("GRAPH_PASSWORD")

        # Access
        self.allow_all: bool = _env_bool("ALLOW_ALL")

        # JWT (API interna)
        self.jwt_secret: str = _env("JWT_SECRET")
        self.jwt_root_username: str = _env("JWT_ROOT_USERNAME")
        self.jwt_root_password: str = _env("JWT_ROOT_PASSWORD")

        # Server / logs
        self.port: int = int(_env("PORT", default="3978"))
        self.log_file: str = _env("LOG_FILE", default="app.log")
        self.log_level: str = _env("LOG_LEVEL", default="INFO").upper()

    def safe_dict(self) -> Dict[str, Any]:
        """Configuração com senhas/segredos mascarados (para log de boot)."""
        out: Dict[str, Any] = {}
        for key, value in vars(self).items():
            lowered = key.lower()
            if ("password" in lowered or "secret" in lowered) and value:
                out[key] = "****"
            else:
                out[key] = value
        return out


settings = Settings()
