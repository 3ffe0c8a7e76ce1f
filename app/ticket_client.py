# app/ticket_client.py
# Cliente da API REST 2.0 do Request Tracker (sistema de tickets).
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# Valor fixo exigido pelo formulário de login do RT
LOGIN_NEXT = "7a73ae647301ce8bdff23044613b37a3"


class TicketAPIError(Exception):
    pass


class TicketAPIRetryableError(TicketAPIError):
    pass


IDEMPOTENT_METHODS = ("GET", "PUT", "DELETE", "HEAD", "OPTIONS")


def _raise_http_error(resp: httpx.Response, context: str, retry_server_errors: bool = True):
    try:
        detail = resp.text[:1200]
    except Exception:
        detail = "<sin cuerpo>"
    message = (
        f"[{context}] HTTP {resp.status_code} ao chamar {resp.request.method} {resp.request.url}. "
        f"Resposta: {detail}"
    )
    # 429 sempre retryable; 5xx só em métodos idempotentes
    if resp.status_code == 429 or (retry_server_errors and resp.status_code >= 500):
        raise TicketAPIRetryableError(message)
    raise TicketAPIError(message)


def hyperlink(entity: Dict[str, Any], ref: str) -> str:
    for link in entity.get("_hyperlinks") or []:
        if link.get("ref") == ref and link.get("_url"):
            return link["_url"]
    raise TicketAPIError(f"Hyperlink '{ref}' não encontrado em {entity.get('type') or 'entidade'} {entity.get('id')}")


class TicketClient:
    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = (endpoint or "").rstrip("/")
        self.username = username
        self.password = password
        self._transport = transport
        self._cookie: Optional[str] = None

    def _client(self, **kwargs) -> httpx.Client:
        return httpx.Client(timeout=25, transport=self._transport, **kwargs)

    # ---------------- sessão ----------------

    def login(self) -> Optional[str]:
        logger.debug(f"[ticket] login endpoint: {self.endpoint}")
        try:
            with self._client() as client:
                resp = client.post(
                    self.endpoint,
                    data={"user": self.username, "pass": self.password, "next": LOGIN_NEXT},
                    headers={"Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"},
                )
            cookies = resp.headers.get_list("set-cookie")
            if not cookies:
                raise TicketAPIError("El header Set-Cookie no fue encontrado.")
            return cookies[0].split(";", 1)[0].strip()
        except Exception as e:
            logger.error(f"[ticket] login falhou: {e}")
            return None

    def _ensure_cookie(self) -> str:
        if not self._cookie:
            self._cookie = self.login()
        if not self._cookie:
            raise TicketAPIError("Não foi possível autenticar na API de tickets.")
        return self._cookie

    @retry(
        retry=retry_if_exception_type(TicketAPIRetryableError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _request(self, method: str, url: str, context: str, json: Any = None) -> Any:
        cookie = self._ensure_cookie()
        headers = {"Cookie": cookie, "Accept": "application/json"}
        with self._client() as client:
            resp = client.request(method, url, headers=headers, json=json)
            if resp.status_code == 401:
                # sessão expirada: renova o cookie uma vez
                self._cookie = None
                headers["Cookie"] = self._ensure_cookie()
                resp = client.request(method, url, headers=headers, json=json)
        if resp.status_code >= 400:
            _raise_http_error(resp, context, retry_server_errors=method.upper() in IDEMPOTENT_METHODS)
        try:
            return resp.json()
        except ValueError:
            return {"status": resp.status_code}

    def get(self, url: str) -> Any:
        logger.debug(f"[ticket] GET {url}")
        return self._request("GET", url, "get")

    def next(self, page: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not page or not page.get("next_page"):
            return None
        return self.get(page["next_page"])

    # ---------------- filas ----------------

    def queues(self) -> Dict[str, Any]:
        return self.get(f"{self.endpoint}/REST/2.0/queues/all")

    def queue(self, queue: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        if isinstance(queue, str):
            queue = {
                "id": queue,
                "_url": f"{self.endpoint}/REST/2.0/queue/{queue}",
                "type": "queue",
            }
        if queue.get("type") != "queue":
            raise TicketAPIError(
                f"The supplied hyperlink of type '{queue.get('type')}' is not of the expected type 'queue'."
            )
        return self.get(queue["_url"])

    # ---------------- tickets ----------------

    def create_ticket(self, queue: Dict[str, Any], subject: str) -> Dict[str, Any]:
        url = hyperlink(queue, "create")
        logger.info(f"[ticket] criando ticket na fila {queue.get('id')}: {subject!r}")
        created = self._request("POST", url, "create_ticket", json={"Subject": subject})
        return self.ticket(created)

    def ticket(self, ref: Dict[str, Any]) -> Dict[str, Any]:
        if (ref or {}).get("type") != "ticket":
            raise TicketAPIError(
                f"The supplied hyperlink of type '{(ref or {}).get('type')}' is not of the expected type 'ticket'."
            )
        return self.get(ref["_url"])

    def update_ticket(self, ticket: Dict[str, Any]) -> Any:
        return self._request("PUT", hyperlink(ticket, "self"), "update_ticket", json={"Status": ticket.get("Status")})

    def add_ticket_comment(self, ticket: Dict[str, Any], message: Dict[str, Any]) -> Any:
        url = hyperlink(ticket, "comment")
        body = message.get("body") or {}
        content = body.get("content") or ""

        attachments: List[Dict[str, Any]] = message.get("attachments") or []
        if attachments:
            content += "<br><br>Attachments:<br>"
            for attachment in attachments:
                content += f'<a href="{attachment.get("contentUrl")}">{attachment.get("name")}</a><br>'

        display_name = (((message.get("from") or {}).get("user")) or {}).get("displayName") or ""
        payload = {
            "Subject": f"Respuesta de {display_name}",
            "Content": content,
            "ContentType": "text/html",
            "TimeTaken": "1",
            "Attachments": [],
        }
        return self._request("POST", url, "add_ticket_comment", json=payload)

    def ticket_history(self, ticket: Dict[str, Any]) -> Dict[str, Any]:
        return self.get(hyperlink(ticket, "history"))

    def health(self) -> Optional[str]:
        return self.login()
