# app/bot.py
from __future__ import annotations

from typing import Any, Dict, Optional

from botbuilder.core import ConversationState, InvokeResponse, TurnContext, UserState
from botbuilder.core.teams import TeamsActivityHandler, TeamsInfo
from loguru import logger

from . import db
from .dialogs import AuthCommandDispatchDialog, DialogManager
from .handlers import ADAPTIVE_CARD_ACTION, HandlerManager
from .logs import log_error

SIGNIN_CANCELLED = "CancelledByUser"
SIGNIN_CANCELLED_TEXT = "El usuario rechazó el flujo de autenticación."
OAUTH_DIALOG = AuthCommandDispatchDialog.dialog_name


def normalize_command_text(text: Optional[str]) -> str:
    return (text or "").lower().replace("\n", "").replace("\r", "").strip()


def _value_get(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key)
    return getattr(value, key, None)


class TeamsBot(TeamsActivityHandler):
    """
    Bot de tickets:
      - texto -> HandlerManager resolve o comando (ex.: `/ticket`)
      - Action.Execute -> HandlerManager resolve a ação pelo verbo
      - invokes signin/* -> continuam (ou cancelam) o diálogo OAuth
    Sem ALLOW_ALL, só técnicos ativos (tabela tecnicalmails) são atendidos.
    """

    def __init__(
        self,
        settings,
        conversation_state: ConversationState,
        user_state: UserState,
        handler_manager: HandlerManager,
        dialog_manager: DialogManager,
    ) -> None:
        self.settings = settings
        self.conversation_state = conversation_state
        self.user_state = user_state
        self.handler_manager = handler_manager
        self.dialog_manager = dialog_manager

    async def on_turn(self, turn_context: TurnContext):
        try:
            await super().on_turn(turn_context)
        except Exception as e:
            log_error(e, "TeamsBot", "on_turn")

        await self.conversation_state.save_changes(turn_context, False)
        await self.user_state.save_changes(turn_context, False)

    # ---------------- invokes ----------------

    async def on_invoke_activity(self, turn_context: TurnContext) -> InvokeResponse:
        activity = turn_context.activity
        if activity.name != ADAPTIVE_CARD_ACTION:
            return await super().on_invoke_activity(turn_context)

        action = _value_get(activity.value, "action") or {}
        verb = _value_get(action, "verb")
        logger.info(f"[BOT] adaptiveCard/action verb={verb!r}")
        try:
            await self.handler_manager.resolve_and_dispatch(turn_context, verb, _value_get(action, "data"))
        except Exception as e:
            log_error(e, "TeamsBot", "on_invoke_activity")
        return InvokeResponse(status=200)

    async def on_teams_signin_verify_state(self, turn_context: TurnContext):
        await self._handle_signin_action(turn_context, turn_context.activity.value)

    async def on_teams_signin_token_exchange(self, turn_context: TurnContext):
        await self._handle_signin_action(turn_context, turn_context.activity.value)

    async def _handle_signin_action(self, turn_context: TurnContext, query: Any) -> None:
        activity = turn_context.activity
        pending = self._pending_oauth_card(activity.reply_to_id)
        if pending:
            logger.info(f"[BOT] signin para o comando {pending.get('command')!r}")

        # remove o card OAuth enviado pelo bot
        if activity.reply_to_id:
            await turn_context.delete_activity(activity.reply_to_id)

        state = _value_get(query, "state") or ""
        if SIGNIN_CANCELLED in str(state):
            await turn_context.send_activity(SIGNIN_CANCELLED_TEXT)
            try:
                await self.dialog_manager.stop_dialog(turn_context, OAUTH_DIALOG)
            except Exception as e:
                log_error(e, "TeamsBot", "_handle_signin_action")
            return

        try:
            await self.dialog_manager.continue_dialog(turn_context, OAUTH_DIALOG)
        except Exception as e:
            log_error(e, "TeamsBot", "_handle_signin_action")

    def _pending_oauth_card(self, activity_id: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            dialog = self.dialog_manager.dialog(OAUTH_DIALOG)
        except KeyError:
            return None
        pending = getattr(dialog, "pending_card", None)
        return pending(activity_id) if callable(pending) else None

    async def on_token_response_event(self, turn_context: TurnContext):
        if turn_context.activity.reply_to_id:
            await turn_context.delete_activity(turn_context.activity.reply_to_id)
        try:
            await self.dialog_manager.continue_dialog(turn_context, OAUTH_DIALOG)
        except Exception as e:
            log_error(e, "TeamsBot", "on_token_response_event")

    # ---------------- mensagens ----------------

    async def on_message_activity(self, turn_context: TurnContext):
        activity = turn_context.activity
        raw = TurnContext.remove_recipient_mention(activity) if activity.text else activity.text
        text = normalize_command_text(raw)

        if not text and _value_get(activity.value, "action"):
            # Action.Execute entregue como mensagem (clientes antigos)
            activity.name = ADAPTIVE_CARD_ACTION
            await self.on_invoke_activity(turn_context)
            return

        try:
            member = await TeamsInfo.get_member(turn_context, activity.from_property.id)
        except Exception as e:
            log_error(e, "TeamsBot", "on_message_activity")
            member = None
        if member is None:
            logger.error(f"[BOT] membro {activity.from_property.id} não encontrado na conversa")
            return

        if not self.settings.allow_all:
            email = getattr(member, "email", None) or getattr(member, "user_principal_name", None)
            if not db.technician_by_email(email):
                logger.warning(f"[BOT] usuário não autorizado: {email}")
                return

        self.handler_manager.context_manager.remember(turn_context)
        await self.handler_manager.resolve_and_dispatch(turn_context, text)
