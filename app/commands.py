# app/commands.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from loguru import logger

from .cards import card_activity, default_gui, format_created_utc, status_choices, ticket_card
from .handlers import CommandHandler, CommandMessage, HandlerTurnContext
from .logs import log_error
from .teams_graph import GraphClient, deleted_message
from .ticket_client import TicketClient

FALLBACK_QUEUE_CHOICES = [{"title": "Test", "value": "0"}]


def thread_message_id(conversation_id: Optional[str]) -> Optional[str]:
    """`19:abc@thread.tacv2;messageid=123` -> `123`."""
    if not conversation_id or ";" not in conversation_id:
        return None
    return conversation_id.split(";", 1)[1].replace("messageid=", "")


class TicketCommandHandler(CommandHandler):
    pattern = "/ticket"
    needs_auth = True

    def __init__(self, ticket_client: TicketClient, graph_client: GraphClient) -> None:
        self.ticket_client = ticket_client
        self.graph_client = graph_client

    def _queue_page(self, fetch) -> Dict[str, Any]:
        try:
            return fetch() or {"items": []}
        except Exception as e:
            log_error(e, "TicketCommandHandler", "_fetch_queue_choices")
            return {"items": []}

    def _fetch_queue_choices(self) -> List[Dict[str, str]]:
        choices: List[Dict[str, str]] = []
        page = self._queue_page(self.ticket_client.queues)
        while True:
            for ref in page.get("items") or []:
                queue = self.ticket_client.queue(ref)
                choices.append({"title": queue.get("Name"), "value": str(queue.get("id"))})
            if not page.get("next_page"):
                break
            current = page
            page = self._queue_page(lambda: self.ticket_client.next(current))
            if not page.get("items"):
                break
        logger.debug(f"[commands] {len(choices)} filas disponíveis")
        return choices or list(FALLBACK_QUEUE_CHOICES)

    async def do_run(self, ctx: HandlerTurnContext, message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        data = data or {}
        profile = self.graph_client.me() or {}

        team = data.get("team") or {}
        channel_ref = data.get("channel") or {}
        sender = data.get("from") or {}

        channel: Dict[str, Any] = {}
        thread: Optional[Dict[str, Any]] = None
        message_id = thread_message_id((data.get("conversation") or {}).get("id"))
        if team.get("aadGroupId") and channel_ref.get("id"):
            channel = self.graph_client.team_channel(team["aadGroupId"], channel_ref["id"]) or {}
            if message_id:
                thread = self.graph_client.team_channel_message(team["aadGroupId"], channel_ref["id"], message_id) or deleted_message()

        card_data = {
            "command": message.text,
            "team": {**(team or {"id": " ", "name": " "}), "choices": []},
            "channel": {
                "id": channel_ref.get("id") or " ",
                "name": channel.get("displayName") or " ",
                "choices": [],
            },
            "conversation": {
                "id": message_id or " ",
                "message": (thread or {}).get("subject") or " ",
                "choices": [],
            },
            "from": {
                "id": sender.get("id"),
                "name": sender.get("name") or " ",
                "aadObjectId": sender.get("aadObjectId"),
                "email": profile.get("mail") or " ",
                "choices": [],
            },
            "ticket": {
                "state": {"id": "", "choices": status_choices()},
                "queue": {"id": "", "choices": self._fetch_queue_choices()},
                "description": "",
            },
            "createdUtc": format_created_utc(),
            "token": data.get("token"),
            "gui": default_gui(),
        }

        return await ctx.context.send_activity(card_activity(ticket_card(card_data)))
