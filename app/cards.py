# app/cards.py
# Adaptive cards montados como dict (Action.Execute / Universal Actions).
from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botbuilder.core import CardFactory, MessageFactory
from botbuilder.schema import Activity

CARD_SCHEMA = "http://adaptivecards.io/schemas/adaptive-card.json"
CARD_VERSION = "1.5"

VERB_AUTH_REFRESH = "authRefresh"
VERB_CREATE_TICKET = "createTicket"
VERB_CANCEL_TICKET = "cancelTicket"
VERB_SELECT_CHOICE = "selectChoiceTicket"

STATE_CHOICE_SET = "ticketStateChoiceSet"
QUEUE_CHOICE_SET = "ticketCategoryChoiceSet"
DESCRIPTION_INPUT = "ticketDescriptionInput"

# Valores de input que o Teams mescla em action.data; não voltam para o card
INPUT_IDS = (STATE_CHOICE_SET, QUEUE_CHOICE_SET, DESCRIPTION_INPUT, "choice")

_MONTHS_ES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)


def format_created_utc(now: Optional[datetime] = None) -> str:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"{now.day:02d} de {_MONTHS_ES[now.month - 1]} de {now.year}, {now:%H:%M:%S}"


def status_choices() -> List[Dict[str, str]]:
    return [
        {"title": "Abierto", "value": "open"},
        {"title": "Cerrado", "value": "closed"},
        {"title": "Resuelto", "value": "resolved"},
        {"title": "Rechazado", "value": "rejected"},
    ]


def default_gui() -> Dict[str, Any]:
    return {
        "buttons": {
            "visible": True,
            "create": {"label": "Crear Incidencia", "enabled": True},
            "cancel": {
                "label": "Cancelar",
                "tooltip": "Cancela la creación de la incidencia",
                "enabled": True,
            },
        }
    }


def action_data(data: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    out = {k: copy.deepcopy(v) for k, v in data.items() if k not in INPUT_IDS}
    out.update(extra)
    return out


def _text(text: str, **kwargs: Any) -> Dict[str, Any]:
    return {"type": "TextBlock", "text": text, "wrap": True, **kwargs}


def auth_refresh_card(data: Dict[str, Any]) -> Dict[str, Any]:
    command = data.get("command") or ""
    payload = action_data(data)
    execute = {
        "type": "Action.Execute",
        "title": "Continuar",
        "verb": VERB_AUTH_REFRESH,
        "data": payload,
    }
    return {
        "type": "AdaptiveCard",
        "$schema": CARD_SCHEMA,
        "version": CARD_VERSION,
        "refresh": {"action": execute, "userIds": list(data.get("userIds") or [])},
        "body": [
            _text("Autenticación requerida", weight="Bolder", size="Medium"),
            _text(f"Para ejecutar `{command}` es necesario revisar el flujo de consentimiento."),
        ],
        "actions": [execute],
    }


def _choice_container(
    data: Dict[str, Any],
    input_id: str,
    label: str,
    selected: str,
    choices: List[Dict[str, str]],
    enabled: bool,
) -> Dict[str, Any]:
    return {
        "type": "Container",
        "selectAction": {
            "type": "Action.Execute",
            "verb": VERB_SELECT_CHOICE,
            "data": action_data(data, choice=input_id),
            "isEnabled": enabled,
        },
        "items": [
            {
                "type": "Input.ChoiceSet",
                "id": input_id,
                "label": label,
                "style": "compact",
                "isRequired": True,
                "errorMessage": f"Seleccione {label.lower()}",
                "value": selected or "",
                "choices": list(choices or []),
            }
        ],
    }


def ticket_card(data: Dict[str, Any]) -> Dict[str, Any]:
    ticket = data.get("ticket") or {}
    state = ticket.get("state") or {}
    queue = ticket.get("queue") or {}
    gui = data.get("gui") or default_gui()
    buttons = gui.get("buttons") or {}
    create = buttons.get("create") or {}
    cancel = buttons.get("cancel") or {}
    editable = bool(create.get("enabled", True)) or not buttons.get("visible", True)

    requester = (data.get("from") or {}).get("name") or " "
    email = (data.get("from") or {}).get("email") or ""
    if email.strip():
        requester = f"{requester} ({email})"

    body: List[Dict[str, Any]] = [
        _text("Nueva incidencia", weight="Bolder", size="Medium"),
        {
            "type": "FactSet",
            "facts": [
                {"title": "Equipo", "value": (data.get("team") or {}).get("name") or " "},
                {"title": "Canal", "value": (data.get("channel") or {}).get("name") or " "},
                {"title": "Conversación", "value": (data.get("conversation") or {}).get("message") or " "},
                {"title": "Solicitante", "value": requester},
                {"title": "Fecha", "value": data.get("createdUtc") or " "},
            ],
        },
        _choice_container(data, STATE_CHOICE_SET, "Estado", state.get("id") or "", state.get("choices") or [], editable),
        _choice_container(data, QUEUE_CHOICE_SET, "Cola", queue.get("id") or "", queue.get("choices") or [], editable),
        {
            "type": "Input.Text",
            "id": DESCRIPTION_INPUT,
            "label": "Descripción",
            "isMultiline": True,
            "value": ticket.get("description") or "",
        },
    ]

    actions: List[Dict[str, Any]] = []
    if buttons.get("visible", True):
        actions = [
            {
                "type": "Action.Execute",
                "title": create.get("label") or "Crear Incidencia",
                "verb": VERB_CREATE_TICKET,
                "associatedInputs": "auto",
                "isEnabled": bool(create.get("enabled", True)),
                "data": action_data(data),
            },
            {
                "type": "Action.Execute",
                "title": cancel.get("label") or "Cancelar",
                "tooltip": cancel.get("tooltip") or "",
                "verb": VERB_CANCEL_TICKET,
                "associatedInputs": "none",
                "isEnabled": bool(cancel.get("enabled", True)),
                "data": action_data(data),
            },
        ]

    return {
        "type": "AdaptiveCard",
        "$schema": CARD_SCHEMA,
        "version": CARD_VERSION,
        "body": body,
        "actions": actions,
    }


def card_activity(card: Dict[str, Any], activity_id: Optional[str] = None) -> Activity:
    message = MessageFactory.attachment(CardFactory.adaptive_card(card))
    if activity_id:
        message.id = activity_id
    return message
