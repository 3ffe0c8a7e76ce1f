# app/handlers.py
# Roteamento de comandos (texto) e ações (verbos de adaptive card) para handlers.
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple, Union

from botbuilder.core import TurnContext
from botbuilder.core.teams import TeamsInfo
from botbuilder.schema import ConversationParameters, ConversationReference
from loguru import logger

from .cards import auth_refresh_card, card_activity
from .logs import log_error

ADAPTIVE_CARD_ACTION = "adaptiveCard/action"
PERSONAL = "personal"

TriggerPattern = Union[str, Pattern, None]


class HandlerType(str, Enum):
    COMMAND = "command"
    ACTION = "action"


class ContextHint(str, Enum):
    BOT = "bot"
    DIALOG = "dialog"


@dataclass
class CommandMessage:
    text: str
    matches: Optional[re.Match] = None


def _serialize(obj: Any) -> Any:
    if obj is None or isinstance(obj, dict):
        return obj
    if hasattr(obj, "serialize"):
        return obj.serialize()
    return dict(vars(obj))


def is_personal(context: TurnContext) -> bool:
    conversation = context.activity.conversation
    return getattr(conversation, "conversation_type", None) == PERSONAL


class Handler:
    pattern: TriggerPattern = None

    def matches(self, text: Optional[str]) -> bool:
        if self.pattern is None or text is None:
            return False
        if isinstance(self.pattern, str):
            return self.pattern == text
        return self.pattern.search(text) is not None

    async def run(self, ctx: "HandlerTurnContext", message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        raise NotImplementedError


class ActionHandler(Handler, ABC):
    """Handler disparado pelo verbo de um Action.Execute."""

    @abstractmethod
    async def run(self, ctx: "HandlerTurnContext", message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        ...


class CommandHandler(Handler, ABC):
    """
    Handler disparado por texto. Com `needs_auth`, em conversas de grupo o comando
    não roda direto: o bot manda um card authRefresh no chat pessoal do usuário e o
    comando só é executado (via `do_run`) depois do consentimento OAuth.
    """

    needs_auth: bool = False

    async def run(self, ctx: "HandlerTurnContext", message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        activity = ctx.context.activity
        if self.needs_auth and getattr(activity.conversation, "is_group", False):
            card_data = await self._auth_card_data(ctx.context, message)

            async def _send_auth_card(personal: HandlerTurnContext) -> None:
                await personal.context.send_activity(card_activity(auth_refresh_card(card_data)))

            return await ctx.switch_to_personal_context(_send_auth_card)

        return await self.do_run(ctx, message, data)

    async def _auth_card_data(self, context: TurnContext, message: CommandMessage) -> Dict[str, Any]:
        activity = context.activity
        conversation = activity.conversation
        channel_id = (conversation.id or "").split(";", 1)[0]

        team: Dict[str, Any] = {"id": "", "name": ""}
        channel: Dict[str, Any] = {"id": "", "name": ""}
        try:
            channels = await TeamsInfo.get_team_channels(context)
            for c in channels or []:
                if c.id == channel_id:
                    channel = _serialize(c)
                    break
            team = _serialize(await TeamsInfo.get_team_details(context)) or team
        except Exception as e:
            log_error(e, "handlers", "CommandHandler._auth_card_data")

        return {
            "command": message.text,
            "team": team,
            "channel": channel,
            "conversation": _serialize(conversation),
            "from": _serialize(activity.from_property),
            "userIds": [activity.from_property.id],
        }

    @abstractmethod
    async def do_run(self, ctx: "HandlerTurnContext", message: CommandMessage, data: Optional[Dict[str, Any]] = None) -> Any:
        ...


class HandlerTurnContext:
    def __init__(self, manager: "HandlerContextManager", context: TurnContext, message: CommandMessage) -> None:
        self._manager = manager
        self._context = context
        self._message = message

    @property
    def message(self) -> CommandMessage:
        return self._message

    @property
    def context(self) -> TurnContext:
        return self._context

    async def switch_to_personal_context(self, action: Callable[["HandlerTurnContext"], Awaitable[Any]]) -> Any:
        if is_personal(self._context):
            return await action(self)

        async def _in_personal(context: TurnContext) -> None:
            await action(HandlerTurnContext(self._manager, context, self._message))

        return await self._manager.switch_to_personal_context(self._context, _in_personal)

    async def run_dialog(self, name: str, data: Optional[Dict[str, Any]] = None):
        return await self._manager.run_dialog(self._context, name, {"data": data})


class HandlerContextManager:
    """Referências de conversa pessoal (por aad_object_id) + acesso aos diálogos."""

    def __init__(self, adapter, app_id: str, dialog_manager=None) -> None:
        self.adapter = adapter
        self.app_id = app_id
        self.dialog_manager = dialog_manager
        self._references: Dict[str, ConversationReference] = {}

    @staticmethod
    def _user_key(context: TurnContext) -> str:
        sender = context.activity.from_property
        return getattr(sender, "aad_object_id", None) or sender.id

    def reference_for(self, context: TurnContext) -> Optional[ConversationReference]:
        return self._references.get(self._user_key(context))

    def remember(self, context: TurnContext) -> None:
        if is_personal(context):
            self._references[self._user_key(context)] = TurnContext.get_conversation_reference(context.activity)

    async def switch_to_personal_context(self, context: TurnContext, action: Callable[[TurnContext], Awaitable[Any]]) -> None:
        if is_personal(context):
            await action(context)
            return

        key = self._user_key(context)
        reference = self._references.get(key)
        if reference:
            logger.debug(f"[handlers] reutilizando conversa pessoal de {key}")
            await self.adapter.continue_conversation(reference, action, self.app_id)
            return

        activity = context.activity
        tenant_id = getattr(activity.conversation, "tenant_id", None) or (activity.channel_data or {}).get("tenant", {}).get("id")
        parameters = ConversationParameters(
            is_group=False,
            bot=activity.recipient,
            members=[activity.from_property],
            tenant_id=tenant_id,
            channel_data={"tenant": {"id": tenant_id}},
        )
        reference = TurnContext.get_conversation_reference(activity)

        async def _created(new_context: TurnContext) -> None:
            self._references[key] = TurnContext.get_conversation_reference(new_context.activity)
            logger.info(f"[handlers] conversa pessoal criada para {key}")
            await action(new_context)

        await self.adapter.create_conversation(reference, _created, parameters)

    async def run_dialog(self, context: TurnContext, name: str, options: Optional[Dict[str, Any]] = None):
        if self.dialog_manager is None:
            raise RuntimeError("Dialog manager não configurado")
        return await self.dialog_manager.run_dialog(context, name, options)


class HandlerManager:
    def __init__(self, context_manager: HandlerContextManager) -> None:
        self.context_manager = context_manager
        self.commands: List[Handler] = []
        self.actions: List[Handler] = []

    def register_command(self, handler: Handler) -> None:
        self.commands.append(handler)

    def register_action(self, handler: Handler) -> None:
        self.actions.append(handler)

    def resolve(self, pattern: Optional[str], handler_type: HandlerType) -> Optional[Handler]:
        handlers = self.commands if handler_type == HandlerType.COMMAND else self.actions
        for handler in handlers:
            if handler.matches(pattern):
                return handler
        return None

    @staticmethod
    def command_message(handler: Handler, text: Optional[str]) -> CommandMessage:
        text = text or ""
        if isinstance(handler.pattern, str) or handler.pattern is None:
            return CommandMessage(text=text, matches=None)
        return CommandMessage(text=text, matches=handler.pattern.search(text))

    @staticmethod
    def _split_hint(data: Optional[Dict[str, Any]]) -> Tuple[ContextHint, Dict[str, Any]]:
        rest = dict(data or {})
        hint = rest.pop("hint", ContextHint.BOT)
        try:
            hint = ContextHint(hint)
        except ValueError:
            hint = ContextHint.BOT
        return hint, rest

    async def dispatch(
        self,
        handler: Optional[Handler],
        context: TurnContext,
        text: Optional[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if handler is None:
            logger.debug(f"[handlers] nenhum handler para {text!r}")
            return None

        message = self.command_message(handler, text)
        hint, rest = self._split_hint(data)
        ctx = HandlerTurnContext(self.context_manager, context, message)
        logger.info(f"[handlers] {type(handler).__name__} <- {message.text!r} (hint={hint.value})")

        if hint == ContextHint.DIALOG and isinstance(handler, CommandHandler):
            return await handler.do_run(ctx, message, rest)
        return await handler.run(ctx, message, rest)

    async def resolve_and_dispatch(self, context: TurnContext, text: Optional[str], data: Optional[Dict[str, Any]] = None) -> Any:
        if getattr(context.activity, "name", None) == ADAPTIVE_CARD_ACTION:
            handler = self.resolve(text, HandlerType.ACTION)
        else:
            handler = self.resolve(text, HandlerType.COMMAND)
        return await self.dispatch(handler, context, text, data)
