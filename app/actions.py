# app/actions.py
# Handlers dos verbos Action.Execute dos adaptive cards.
from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Optional

from loguru import logger

from . import db
from .cards import (
    DESCRIPTION_INPUT,
    QUEUE_CHOICE_SET,
    STATE_CHOICE_SET,
    VERB_AUTH_REFRESH,
    VERB_CANCEL_TICKET,
    VERB_CREATE_TICKET,
    VERB_SELECT_CHOICE,
    card_activity,
    ticket_card,
)
from .handlers import ActionHandler, CommandMessage, HandlerTurnContext, is_personal
from .teams_graph import APPLICATION_IDENTITY_BOT, GraphClient
from .ticket_client import TicketClient


def _action_data(ctx: HandlerTurnContext) -> Dict[str, Any]:
    value = ctx.context.activity.value or {}
    return ((value.get("action") or {}).get("data")) or {}


def _thread_ids(data: Dict[str, Any]):
    return (
        (data.get("team") or {}).get("aadGroupId"),
        (data.get("channel") or {}).get("id"),
        (data.get("conversation") or {}).get("id"),
    )


def _buttons(data: Dict[str, Any]) -> Dict[str, Any]:
    return ((data.get("gui") or {}).get("buttons")) or {}


class AuthRefreshActionHandler(ActionHandler):
    pattern = VERB_AUTH_REFRESH

    async def run(self, ctx: HandlerTurnContext, message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        activity = ctx.context.activity
        if activity.reply_to_id:
            await ctx.context.delete_activity(activity.reply_to_id)

        # o consentimento só acontece no chat pessoal
        if not is_personal(ctx.context):
            logger.debug("[actions] authRefresh ignorado fora do chat pessoal")
            return None

        return await ctx.run_dialog(VERB_AUTH_REFRESH, _action_data(ctx))


class TicketCreateActionHandler(ActionHandler):
    pattern = VERB_CREATE_TICKET

    def __init__(self, settings, ticket_client: TicketClient, graph_client: GraphClient) -> None:
        self.settings = settings
        self.ticket_client = ticket_client
        self.graph_client = graph_client

    def _submitted_card_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ticket = data.get("ticket") or {}
        state_id = data.get(STATE_CHOICE_SET) or ""
        queue_id = data.get(QUEUE_CHOICE_SET) or ""
        buttons = _buttons(data)
        return {
            **data,
            "ticket": {
                "state": {
                    "id": state_id,
                    "choices": [c for c in (ticket.get("state") or {}).get("choices") or [] if c.get("value") == state_id],
                },
                "queue": {
                    "id": queue_id,
                    "choices": [c for c in (ticket.get("queue") or {}).get("choices") or [] if c.get("value") == queue_id],
                },
                "description": data.get(DESCRIPTION_INPUT) or "",
            },
            "gui": {
                "buttons": {
                    "visible": True,
                    "create": {**(buttons.get("create") or {}), "enabled": False},
                    "cancel": {
                        **(buttons.get("cancel") or {}),
                        "label": "Borrar Hilo",
                        "tooltip": "Borra el hilo de conversacion asociado a la incidencia",
                    },
                }
            },
        }

    def _mentions_only_bot(self, message: Dict[str, Any]) -> bool:
        mentions = message.get("mentions") or []
        if len(mentions) != 1:
            return False
        application = ((mentions[0].get("mentioned") or {}).get("application")) or {}
        return (
            application.get("applicationIdentityType") == APPLICATION_IDENTITY_BOT
            and application.get("id") == self.settings.bot_id
        )

    def _commentable(self, message: Dict[str, Any]) -> bool:
        content = ((message.get("body") or {}).get("content")) or ""
        if not content.strip() or not (message.get("from") or {}).get("user"):
            return False
        if self._mentions_only_bot(message):
            logger.debug("[actions] mensagem só menciona o bot, ignorando")
            return False
        return True

    async def run(self, ctx: HandlerTurnContext, message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        context = ctx.context
        action_data = _action_data(ctx)

        # trava o card com a seleção enviada
        submitted = self._submitted_card_data(action_data)
        await context.update_activity(card_activity(ticket_card(submitted), context.activity.reply_to_id))

        team_id, channel_id, thread_id = _thread_ids(action_data)
        initial = self.graph_client.team_channel_message(team_id, channel_id, thread_id)
        replies = self.graph_client.team_channel_message_replies(team_id, channel_id, thread_id)

        thread_messages: List[Dict[str, Any]] = [
            {
                "body": {"content": action_data.get(DESCRIPTION_INPUT) or "", "contentType": "text/plain"},
                "from": initial.get("from"),
            },
            initial,
            *replies,
        ]
        logger.debug(f"[actions] thread com {len(thread_messages)} mensagens")

        queue = self.ticket_client.queue(action_data.get(QUEUE_CHOICE_SET) or "")
        ticket = self.ticket_client.create_ticket(queue, initial.get("subject") or "")
        ticket_id = ticket.get("id")
        logger.info(f"[actions] ticket {ticket_id} criado na fila {queue.get('id')}")

        log_payload = {k: v for k, v in action_data.items() if k != "token"}
        log_payload["threadMessages"] = thread_messages
        db.create_log(json.dumps(log_payload, ensure_ascii=False, default=str))

        for thread_message in thread_messages:
            if not self._commentable(thread_message):
                continue
            self.ticket_client.add_ticket_comment(ticket, copy.deepcopy(thread_message))

        return await context.send_activity(
            f"Se hay creado el ticket con el número: {ticket_id}. "
            f"Lo puedes acceder en [este enlace]({self.settings.api_endpoint}/Ticket/Display.html?id={ticket_id})."
        )


class TicketCancelActionHandler(ActionHandler):
    pattern = VERB_CANCEL_TICKET

    def __init__(self, graph_client: GraphClient) -> None:
        self.graph_client = graph_client

    async def run(self, ctx: HandlerTurnContext, message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        action_data = _action_data(ctx)

        # create desabilitado = ticket já criado -> apaga o hilo inteiro
        if not (_buttons(action_data).get("create") or {}).get("enabled", True):
            team_id, channel_id, thread_id = _thread_ids(action_data)
            for reply in self.graph_client.team_channel_message_replies(team_id, channel_id, thread_id):
                self.graph_client.delete_team_channel_message_reply(team_id, channel_id, thread_id, reply.get("id"))
            self.graph_client.delete_team_channel_message(team_id, channel_id, thread_id)
            logger.info(f"[actions] hilo {thread_id} apagado")

        await ctx.context.delete_activity(ctx.context.activity.reply_to_id)


class TicketSelectChoiceActionHandler(ActionHandler):
    pattern = VERB_SELECT_CHOICE

    async def run(self, ctx: HandlerTurnContext, message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        context = ctx.context
        action_data = _action_data(ctx)
        card_data = copy.deepcopy(action_data)
        ticket = card_data.setdefault("ticket", {})

        choice = action_data.get("choice")
        if choice == STATE_CHOICE_SET:
            ticket.setdefault("state", {})["id"] = action_data.get(STATE_CHOICE_SET) or ""
        elif choice == QUEUE_CHOICE_SET:
            ticket.setdefault("queue", {})["id"] = action_data.get(QUEUE_CHOICE_SET) or ""
        if DESCRIPTION_INPUT in action_data:
            ticket["description"] = action_data.get(DESCRIPTION_INPUT) or ""

        state_id = (ticket.get("state") or {}).get("id")
        queue_id = (ticket.get("queue") or {}).get("id")
        if state_id and queue_id:
            buttons = card_data.setdefault("gui", {}).setdefault("buttons", {})
            buttons.setdefault("create", {})["enabled"] = True

        await context.update_activity(card_activity(ticket_card(card_data), context.activity.reply_to_id))
