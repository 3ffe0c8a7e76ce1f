# app/teams_graph.py
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import requests
from loguru import logger


class TeamsGraphError(RuntimeError):
    pass


GRAPH = "https://graph.microsoft.com/v1.0"
GRAPH_BETA = "https://graph.microsoft.com/beta"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
SHAREPOINT_SCOPE = "https://microsoft.sharepoint.com/.default"

APPLICATION_IDENTITY_BOT = "bot"

_DELETED_TEXT = "La mensaje ha sido eliminada"

DELETED_MESSAGE: Dict[str, Any] = {
    "@odata.context": "",
    "id": "-1",
    "subject": _DELETED_TEXT,
    "attachments": [],
    "body": {"content": _DELETED_TEXT, "contentType": "text/plain"},
    "from": {
        "user": {
            "displayName": _DELETED_TEXT,
            "id": "-1",
            "tenantId": "-1",
            "userIdentityType": None,
        }
    },
    "mentions": [],
}


def deleted_message(thread_id: str | None = None) -> Dict[str, Any]:
    msg = {**DELETED_MESSAGE, "from": {"user": dict(DELETED_MESSAGE["from"]["user"])}}
    if thread_id:
        msg["id"] = thread_id
    return msg


# ---------------- Token (password grant) ----------------

class _PasswordGrantToken:
    """Token delegado (ROPC) da conta técnica, com cache até perto de expirar."""

    def __init__(self, settings, scope: str) -> None:
        self.settings = settings
        self.scope = scope
        self._token: Optional[Dict[str, Any]] = None
        self._expires_at: float = 0.0

    def fetch(self) -> Dict[str, Any]:
        s = self.settings
        if not s.client_id or not s.graph_username:
            raise TeamsGraphError(
                "Credenciais do Graph ausentes. Defina AAD_APP_CLIENT_ID, AAD_APP_CLIENT_SECRET, "
                "GRAPH_USERNAME e GRAPH_PASSWORD."
            )
        data = {
            "grant_type": "password",
            "client_id": s.client_id,
            "client_secret": s.client_secret,
            "scope": self.scope,
            "username": s.graph_username,
            "password": s.graph_password,
        }
        r = requests.post(f"{s.authority}/oauth2/v2.0/token", data=data, timeout=30)
        if r.status_code != 200:
            try:
                detail = r.json().get("error_description") or r.text
            except ValueError:
                detail = r.text
            raise TeamsGraphError(f"Falha ao obter token: {r.status_code} {detail}")
        payload = r.json()
        if "error" in payload:
            raise TeamsGraphError(f"Falha ao obter token: {payload.get('error_description') or payload['error']}")
        self._token = payload
        self._expires_at = time.time() + int(payload.get("expires_in") or 0) - 60
        return payload

    def access_token(self) -> str:
        if not self._token or time.time() >= self._expires_at:
            self.fetch()
        return self._token["access_token"]


# ---------------- Graph ----------------

class GraphClient:
    def __init__(self, settings) -> None:
        self._token = _PasswordGrantToken(settings, GRAPH_SCOPE)

    def _g(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self._token.access_token()}"
        headers.setdefault("Content-Type", "application/json")
        return requests.request(method, url, headers=headers, timeout=30, **kwargs)

    def _get_or_none(self, url: str, fn: str) -> Optional[Dict[str, Any]]:
        try:
            r = self._g("GET", url)
            if r.status_code != 200:
                raise TeamsGraphError(f"{r.status_code} {r.text[:500]}")
            return r.json()
        except Exception as e:
            logger.error(f"[graph] {fn} falhou: {e}")
            return None

    def health(self) -> Dict[str, Any]:
        return self._token.fetch()

    def me(self) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{GRAPH}/me", "me")

    def teams(self) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{GRAPH}/teams", "teams")

    def team(self, team_id: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{GRAPH}/teams/{team_id}", "team")

    def team_channels(self, team_id: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{GRAPH}/teams/{team_id}/channels", "team_channels")

    def team_channel(self, team_id: str, channel_id: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none(f"{GRAPH}/teams/{team_id}/channels/{channel_id}", "team_channel")

    # ---------------- Mensagens de canal (beta) ----------------

    def team_channel_message(self, team_id: str, channel_id: str, thread_id: str) -> Dict[str, Any]:
        url = f"{GRAPH_BETA}/teams/{team_id}/channels/{channel_id}/messages/{thread_id}"
        r = self._g("GET", url)
        if r.status_code == 404:
            logger.warning(f"[graph] mensagem {thread_id} não encontrada (apagada)")
            return deleted_message(thread_id)
        if r.status_code != 200:
            raise TeamsGraphError(f"Falha ao ler mensagem {thread_id}: {r.status_code} {r.text[:500]}")
        return r.json()

    def team_channel_message_replies(self, team_id: str, channel_id: str, thread_id: str) -> List[Dict[str, Any]]:
        url: Optional[str] = f"{GRAPH_BETA}/teams/{team_id}/channels/{channel_id}/messages/{thread_id}/replies"
        replies: List[Dict[str, Any]] = []
        first = True
        while url:
            try:
                r = self._g("GET", url)
                if r.status_code != 200:
                    raise TeamsGraphError(f"{r.status_code} {r.text[:500]}")
                page = r.json()
            except Exception as e:
                logger.error(f"[graph] team_channel_message_replies falhou: {e}")
                if first:
                    return []
                break
            first = False
            replies.extend(page.get("value") or [])
            url = page.get("@odata.nextLink")
        # Graph devolve da mais nova para a mais antiga
        replies.reverse()
        return replies

    def delete_team_channel_message(self, team_id: str, channel_id: str, thread_id: str) -> None:
        url = f"{GRAPH_BETA}/teams/{team_id}/channels/{channel_id}/messages/{thread_id}/softDelete"
        try:
            r = self._g("POST", url, json={})
            if r.status_code >= 400:
                raise TeamsGraphError(f"{r.status_code} {r.text[:500]}")
        except Exception as e:
            logger.error(f"[graph] delete_team_channel_message falhou: {e}")

    def delete_team_channel_message_reply(self, team_id: str, channel_id: str, thread_id: str, reply_id: str) -> None:
        url = f"{GRAPH_BETA}/teams/{team_id}/channels/{channel_id}/messages/{thread_id}/replies/{reply_id}"
        try:
            r = self._g("DELETE", url)
            if r.status_code >= 400:
                raise TeamsGraphError(f"{r.status_code} {r.text[:500]}")
        except Exception as e:
            logger.error(f"[graph] delete_team_channel_message_reply falhou: {e}")


# ---------------- Sharepoint ----------------

class SharepointClient:
    def __init__(self, settings) -> None:
        self._token = _PasswordGrantToken(settings, SHAREPOINT_SCOPE)

    def health(self) -> Dict[str, Any]:
        return self._token.fetch()
