# app/dialogs.py
# Registro de diálogos + diálogo OAuth que reexecuta o comando após o consentimento.
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from botbuilder.core import ConversationState, Storage, TurnContext
from botbuilder.dialogs import (
    ComponentDialog,
    Dialog,
    DialogContext,
    DialogInstance,
    DialogReason,
    DialogSet,
    DialogTurnResult,
    DialogTurnStatus,
    WaterfallDialog,
    WaterfallStepContext,
)
from botbuilder.dialogs.prompts import OAuthPrompt, OAuthPromptSettings, PromptOptions
from botbuilder.schema import Activity, ActivityTypes, InputHints, SignInConstants
from loguru import logger

from .handlers import ContextHint
from .logs import log_error

MAIN_DIALOG = "MainDialog"
INITIAL_DIALOG_ID = "MainWaterfallDialog"
OAUTH_PROMPT_ID = "OAuthPrompt"
DIALOG_STATE_PROPERTY = "dialogState"

OAUTH_TIMEOUT_MS = 900000
SIGNIN_FAILED_TEXT = "No se puede iniciar sesión o el usuario rechazó el flujo de autenticación."

SIGNIN_INVOKES = (
    SignInConstants.token_exchange_operation_name,
    SignInConstants.verify_state_operation_name,
)


class DialogNotFoundError(KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Dialog {self.name} not found"


class DialogAlreadyRegisteredError(ValueError):
    pass


class RunnableDialog(ABC):
    dialog_name: str

    @abstractmethod
    async def run(self, context: TurnContext, data: Optional[Dict[str, Any]] = None) -> DialogTurnResult:
        ...

    @abstractmethod
    async def continue_run(self, context: TurnContext) -> DialogTurnResult:
        ...

    @abstractmethod
    async def stop(self, context: TurnContext) -> DialogTurnResult:
        ...


class DialogManager:
    def __init__(self) -> None:
        self._dialogs: Dict[str, RunnableDialog] = {}

    def register_dialog(self, dialog: RunnableDialog) -> None:
        if dialog.dialog_name in self._dialogs:
            raise DialogAlreadyRegisteredError(f"Dialog {dialog.dialog_name} already registered")
        self._dialogs[dialog.dialog_name] = dialog

    def dialog(self, name: str) -> RunnableDialog:
        dialog = self._dialogs.get(name)
        if dialog is None:
            raise DialogNotFoundError(name)
        return dialog

    async def run_dialog(self, context: TurnContext, name: str, data: Optional[Dict[str, Any]] = None) -> DialogTurnResult:
        return await self.dialog(name).run(context, data)

    async def continue_dialog(self, context: TurnContext, name: str) -> DialogTurnResult:
        return await self.dialog(name).continue_run(context)

    async def stop_dialog(self, context: TurnContext, name: str) -> DialogTurnResult:
        return await self.dialog(name).stop(context)


class CacheBypassOAuthPrompt(OAuthPrompt):
    """OAuthPrompt que sempre envia o card de login (não reaproveita token em cache)."""

    def __init__(self, dialog_id: str, settings: OAuthPromptSettings) -> None:
        super().__init__(dialog_id, settings)
        self.prompt_settings = settings

    async def begin_dialog(self, dialog_context: DialogContext, options: PromptOptions = None) -> DialogTurnResult:
        if dialog_context is None:
            raise TypeError("CacheBypassOAuthPrompt.begin_dialog(): dialog_context cannot be None")

        options = options or PromptOptions()
        for prompt in (options.prompt, options.retry_prompt):
            if isinstance(prompt, Activity) and not isinstance(prompt.input_hint, str):
                prompt.input_hint = InputHints.accepting_input

        timeout = self.prompt_settings.timeout if isinstance(self.prompt_settings.timeout, int) else OAUTH_TIMEOUT_MS
        state = dialog_context.active_dialog.state
        state["state"] = {}
        state["options"] = options
        state["expires"] = datetime.now() + timedelta(seconds=timeout / 1000)
        state["caller"] = None

        await self._send_oauth_card(dialog_context.context, options.prompt)
        return Dialog.end_of_turn


class AuthCommandDispatchDialog(ComponentDialog, RunnableDialog):
    """
    Fluxo authRefresh:
      1. envia o card OAuth (sem cache de token);
      2. descarta invokes signin/* duplicados (cada cliente Teams aberto manda o seu);
      3. com token, re-resolve o comando digitado e chama `do_run` com o token.
    """

    dialog_name = "authRefresh"

    def __init__(
        self,
        connection_name: str,
        conversation_state: ConversationState,
        dedup_storage: Storage,
        handler_manager,
    ) -> None:
        super().__init__(MAIN_DIALOG)

        self._dialog_state_accessor = conversation_state.create_property(DIALOG_STATE_PROPERTY)
        self._dedup_storage = dedup_storage
        self._dedup_storage_keys: List[str] = []
        self._handler_manager = handler_manager
        self._pending_cards: Dict[str, Dict[str, Any]] = {}

        self.add_dialog(
            CacheBypassOAuthPrompt(
                OAUTH_PROMPT_ID,
                OAuthPromptSettings(
                    connection_name=connection_name,
                    title="Flujo Consentimiento",
                    text="Revise y acepte el flujo de consentimiento para continuar.",
                    timeout=OAUTH_TIMEOUT_MS,
                    end_on_invalid_message=True,
                ),
            )
        )
        self.add_dialog(
            WaterfallDialog(
                INITIAL_DIALOG_ID,
                [self._prompt_step, self._dedup_step, self._dispatch_step],
            )
        )
        self.initial_dialog_id = INITIAL_DIALOG_ID

    # ---------------- RunnableDialog ----------------

    async def _create_context(self, context: TurnContext) -> DialogContext:
        dialog_set = DialogSet(self._dialog_state_accessor)
        dialog_set.add(self)
        return await dialog_set.create_context(context)

    async def run(self, context: TurnContext, data: Optional[Dict[str, Any]] = None) -> DialogTurnResult:
        dialog_context = await self._create_context(context)
        result = await dialog_context.continue_dialog()
        if result.status == DialogTurnStatus.Empty:
            return await dialog_context.begin_dialog(self.id, data)
        return result

    async def continue_run(self, context: TurnContext) -> DialogTurnResult:
        dialog_context = await self._create_context(context)
        result = await dialog_context.continue_dialog()
        if result.status == DialogTurnStatus.Empty:
            return DialogTurnResult(DialogTurnStatus.Empty)
        return result

    async def stop(self, context: TurnContext) -> DialogTurnResult:
        dialog_context = await self._create_context(context)
        await self._dialog_state_accessor.delete(context)
        self._forget_pending_cards(context.activity.conversation.id)
        return await dialog_context.cancel_all_dialogs()

    def pending_card(self, activity_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not activity_id:
            return None
        return self._pending_cards.pop(activity_id, None)

    def _forget_pending_cards(self, conversation_id: Optional[str]) -> None:
        stale = [k for k, v in self._pending_cards.items() if v.get("conversation_id") == conversation_id]
        for key in stale:
            del self._pending_cards[key]

    # ---------------- Waterfall ----------------

    async def _prompt_step(self, step_context: WaterfallStepContext) -> DialogTurnResult:
        context = step_context.context
        data = (step_context.options or {}).get("data") or {}
        sent_ids: List[str] = []
        send_activity = context.send_activity

        async def _capturing_send(activity_or_text, speak=None, input_hint=None):
            response = await send_activity(activity_or_text, speak, input_hint)
            if response is not None and getattr(response, "id", None):
                sent_ids.append(response.id)
            return response

        context.send_activity = _capturing_send
        try:
            await step_context.begin_dialog(OAUTH_PROMPT_ID)
        except Exception as e:
            log_error(e, "dialogs", "AuthCommandDispatchDialog._prompt_step")
            return await step_context.next(None)
        finally:
            context.send_activity = send_activity

        if sent_ids:
            oauth_activity_id = sent_ids[-1]
            step_context.options["oauth_activity_id"] = oauth_activity_id
            self._pending_cards[oauth_activity_id] = {
                "command": data.get("command"),
                "conversation_id": context.activity.conversation.id,
            }
        return Dialog.end_of_turn

    async def _dedup_step(self, step_context: WaterfallStepContext) -> DialogTurnResult:
        token_result = step_context.result
        # só deduplica depois do prompt, para todos os clientes receberem o card
        if token_result and await self._should_dedup(step_context.context):
            logger.info("[dialogs] token exchange duplicado ignorado")
            return Dialog.end_of_turn
        return await step_context.next(token_result)

    async def _dispatch_step(self, step_context: WaterfallStepContext) -> DialogTurnResult:
        token_result = step_context.result
        if not token_result:
            await step_context.context.send_activity(SIGNIN_FAILED_TEXT)
            return await step_context.end_dialog()

        data = dict((step_context.options or {}).get("data") or {})
        command = data.get("command")
        try:
            await self._handler_manager.resolve_and_dispatch(
                step_context.context,
                command,
                {**data, "hint": ContextHint.DIALOG, "token": getattr(token_result, "token", None)},
            )
        except Exception as e:
            log_error(e, "dialogs", "AuthCommandDispatchDialog._dispatch_step")

        return await step_context.end_dialog(token_result)

    async def on_end_dialog(self, context: TurnContext, instance: DialogInstance, reason: DialogReason) -> None:
        conversation_id = context.activity.conversation.id
        keys = [k for k in self._dedup_storage_keys if conversation_id in k]
        if keys:
            await self._dedup_storage.delete(keys)
            self._dedup_storage_keys = [k for k in self._dedup_storage_keys if k not in keys]
        self._forget_pending_cards(conversation_id)
        await super().on_end_dialog(context, instance, reason)

    # ---------------- Dedup ----------------

    @staticmethod
    def _value_id(activity) -> Optional[str]:
        value = activity.value
        if isinstance(value, dict):
            return value.get("id")
        return getattr(value, "id", None)

    @classmethod
    def _is_signin_invoke(cls, context: TurnContext) -> bool:
        activity = context.activity
        return activity.type == ActivityTypes.invoke and activity.name in SIGNIN_INVOKES

    @classmethod
    def storage_key(cls, context: TurnContext) -> str:
        activity = getattr(context, "activity", None)
        if activity is None or activity.conversation is None:
            raise ValueError("Unable to get storage key from current turn context")
        if not cls._is_signin_invoke(context):
            raise ValueError(
                f"Unable to get storage key as current activity is of type '{activity.type}::{activity.name}'"
            )
        value_id = cls._value_id(activity)
        if not value_id:
            raise ValueError("Unable to get storage key as current activity value is missing its id")
        return f"{activity.channel_id}/{activity.conversation.id}/{value_id}"

    async def _should_dedup(self, context: TurnContext) -> bool:
        if not self._is_signin_invoke(context) or not self._value_id(context.activity):
            return False

        key = self.storage_key(context)
        # chave já gravada = invoke repetido de outro cliente
        if (await self._dedup_storage.read([key])).get(key):
            return True
        await self._dedup_storage.write({key: {"value_id": self._value_id(context.activity)}})
        self._dedup_storage_keys.append(key)
        return False
