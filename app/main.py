# app/main.py
from __future__ import annotations

import asyncio
import sys
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from loguru import logger

# --- Windows: usar o event loop compatível (evita warnings/erros no BotBuilder)
if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())  # type: ignore[attr-defined]
    except Exception:
        pass

from app.api import graph_client, router as api_router, ticket_client
from app.auth import jwt_middleware
from app.config import settings
from app.db import init_db
from app.logs import setup_logging

# -----------------------------------------------------------------------------#
# App + Logs
# -----------------------------------------------------------------------------#
setup_logging(settings.log_file, settings.log_level)
logger.info(f"[BOOT] configuração: {settings.safe_dict()}")

app = FastAPI(title="Teams Ticket Bot")
app.middleware("http")(jwt_middleware)
app.include_router(api_router)

# DB
init_db()

# -----------------------------------------------------------------------------#
# BOT: carregamento seguro (sempre registra /api/messages)
# -----------------------------------------------------------------------------#
_bot_loaded_ok = False
_bot_boot_error = None

try:
    from botbuilder.core import (
        BotFrameworkAdapter,
        BotFrameworkAdapterSettings,
        ConversationState,
        MemoryStorage,
        UserState,
    )
    from botbuilder.schema import Activity

    from app.actions import (
        AuthRefreshActionHandler,
        TicketCancelActionHandler,
        TicketCreateActionHandler,
        TicketSelectChoiceActionHandler,
    )
    from app.bot import TeamsBot
    from app.commands import TicketCommandHandler
    from app.dialogs import AuthCommandDispatchDialog, DialogManager
    from app.handlers import HandlerContextManager, HandlerManager

    # Validação explícita de credenciais
    missing = []
    if not settings.bot_id: missing.append("BOT_ID")
    if not settings.bot_password: missing.append("BOT_PASSWORD")
    if missing:
        raise RuntimeError(f"Credenciais ausentes: {', '.join(missing)}")

    adapter_settings = BotFrameworkAdapterSettings(
        app_id=settings.bot_id,
        app_password=settings.bot_password,
        channel_auth_tenant=(settings.tenant_id if settings.bot_type.lower() == "singletenant" else None),
        oauth_endpoint=None,
    )
    bot_adapter = BotFrameworkAdapter(adapter_settings)

    async def _on_adapter_error(turn_context, error: Exception):
        logger.exception("[BOT] erro não tratado no turno: {}", error)

    bot_adapter.on_turn_error = _on_adapter_error

    memory = MemoryStorage()
    dedup_storage = MemoryStorage()
    conversation_state = ConversationState(memory)
    user_state = UserState(memory)

    dialog_manager = DialogManager()
    context_manager = HandlerContextManager(bot_adapter, settings.bot_id, dialog_manager)
    handler_manager = HandlerManager(context_manager)

    handler_manager.register_command(TicketCommandHandler(ticket_client, graph_client))
    handler_manager.register_action(AuthRefreshActionHandler())
    handler_manager.register_action(TicketCreateActionHandler(settings, ticket_client, graph_client))
    handler_manager.register_action(TicketCancelActionHandler(graph_client))
    handler_manager.register_action(TicketSelectChoiceActionHandler())

    dialog_manager.register_dialog(
        AuthCommandDispatchDialog(
            settings.bot_connection_name,
            conversation_state,
            dedup_storage,
            handler_manager,
        )
    )

    bot = TeamsBot(settings, conversation_state, user_state, handler_manager, dialog_manager)

    @app.post("/api/messages")
    async def messages(request: Request):
        logger.info("[BOT] /api/messages called")
        try:
            body = await request.json()
        except Exception:
            logger.warning("[BOT] payload inválido (não-JSON).")
            body = {}

        auth_header = request.headers.get("Authorization", "")

        # tenta desserializar Activity; se falhar, o adapter ainda valida
        try:
            activity = Activity().deserialize(body)
        except Exception:
            logger.warning("[BOT] falha ao desserializar Activity; passando body cru.")
            activity = body

        try:
            invoke_response = await asyncio.wait_for(
                bot_adapter.process_activity(activity, auth_header, bot.on_turn),
                timeout=25,
            )
        except asyncio.TimeoutError:
            logger.error("[BOT] process_activity TIMEOUT (cheque *.botframework.com / login.botframework.com)")
            return Response(status_code=200)
        except PermissionError as e:
            logger.warning(f"[BOT] requisição não autorizada: {e}")
            return Response(status_code=401)
        except Exception as e:
            logger.exception("[BOT] erro no process_activity: {}", e)
            return Response(status_code=200)

        if invoke_response:
            return JSONResponse(status_code=invoke_response.status, content=invoke_response.body)
        return Response(status_code=201)

    _bot_loaded_ok = True
    logger.info("[BOOT] Bot do Teams carregado com sucesso (/api/messages).")

except Exception as e:
    _bot_boot_error = f"{e}"
    logger.error(f"[BOOT] Falha ao inicializar Bot do Teams: {e}\n{traceback.format_exc()}")

# Stub só se não carregou; nunca 5xx, mas loga o motivo
if not _bot_loaded_ok:
    @app.post("/api/messages")
    async def messages_stub(_: Request):
        logger.error("[BOOT] Bot indisponível (stub); verifique dependências/credenciais. Motivo: {}", _bot_boot_error)
        return Response(status_code=200)


@app.get("/api/bot/health")
def bot_health():
    return {
        "status": 200,
        "data": {
            "loaded": _bot_loaded_ok,
            "app_id_present": bool(settings.bot_id),
            "app_password_present": bool(settings.bot_password),
            "connection_name_present": bool(settings.bot_connection_name),
            "boot_error": _bot_boot_error,
        },
    }
