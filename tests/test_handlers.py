import asyncio
import re
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from botbuilder.schema import Activity, ChannelAccount, ConversationAccount, ConversationParameters

from app.cards import VERB_AUTH_REFRESH
from app.handlers import (
    ADAPTIVE_CARD_ACTION,
    ActionHandler,
    CommandHandler,
    ContextHint,
    HandlerContextManager,
    HandlerManager,
    HandlerType,
)


def _activity(conversation_type="channel", name=None, text="/ticket"):
    return Activity(
        type="invoke" if name else "message",
        name=name,
        id="act-1",
        text=text,
        channel_id="msteams",
        service_url="https://smba.example.com",
        from_property=ChannelAccount(id="29:user", name="Ana", aad_object_id="aad-user"),
        recipient=ChannelAccount(id="28:bot", name="Bot"),
        conversation=ConversationAccount(
            id="19:chan@thread.tacv2;messageid=123",
            conversation_type=conversation_type,
            is_group=conversation_type != "personal",
            tenant_id="tenant-1",
        ),
    )


class RecordingCommand(CommandHandler):
    pattern = "/ticket"

    def __init__(self, needs_auth=False):
        self.needs_auth = needs_auth
        self.calls = []

    async def do_run(self, ctx, message, data=None):
        self.calls.append((message.text, data))
        return "ran"


class RegexCommand(CommandHandler):
    pattern = re.compile(r"^/estado (\d+)$")

    async def do_run(self, ctx, message, data=None):
        return message.matches.group(1)


class RecordingAction(ActionHandler):
    pattern = "createTicket"

    def __init__(self):
        self.calls = []

    async def run(self, ctx, message, data=None):
        self.calls.append(data)
        return "action"


class FakeContextManager:
    def __init__(self):
        self.personal_context = SimpleNamespace(activity=_activity("personal"), send_activity=AsyncMock())

    async def switch_to_personal_context(self, context, action):
        await action(self.personal_context)


class HandlerManagerTests(unittest.TestCase):
    def setUp(self):
        self.context_manager = FakeContextManager()
        self.manager = HandlerManager(self.context_manager)
        self.command = RecordingCommand()
        self.action = RecordingAction()
        self.manager.register_command(self.command)
        self.manager.register_command(RegexCommand())
        self.manager.register_action(self.action)

    def test_resolve_by_type(self):
        self.assertIs(self.manager.resolve("/ticket", HandlerType.COMMAND), self.command)
        self.assertIsNone(self.manager.resolve("/ticket", HandlerType.ACTION))
        self.assertIs(self.manager.resolve("createTicket", HandlerType.ACTION), self.action)
        self.assertIsNone(self.manager.resolve(None, HandlerType.COMMAND))
        self.assertIsNone(self.manager.resolve("/otro", HandlerType.COMMAND))

    def test_regex_command_gets_matches(self):
        context = SimpleNamespace(activity=_activity(text="/estado 42"))
        result = asyncio.run(self.manager.resolve_and_dispatch(context, "/estado 42"))
        self.assertEqual(result, "42")

    def test_card_action_resolves_actions(self):
        context = SimpleNamespace(activity=_activity(name=ADAPTIVE_CARD_ACTION))
        result = asyncio.run(self.manager.resolve_and_dispatch(context, "createTicket", {"x": 1}))
        self.assertEqual(result, "action")
        self.assertEqual(self.action.calls, [{"x": 1}])

    def test_unknown_text_is_ignored(self):
        context = SimpleNamespace(activity=_activity())
        self.assertIsNone(asyncio.run(self.manager.resolve_and_dispatch(context, "hola")))

    def test_dialog_hint_runs_command_directly(self):
        self.command.needs_auth = True
        context = SimpleNamespace(activity=_activity())
        result = asyncio.run(
            self.manager.resolve_and_dispatch(context, "/ticket", {"hint": ContextHint.DIALOG, "token": "tok"})
        )
        self.assertEqual(result, "ran")
        self.assertEqual(self.command.calls, [("/ticket", {"token": "tok"})])

    def test_auth_command_in_group_sends_auth_card_in_personal_chat(self):
        self.command.needs_auth = True
        context = SimpleNamespace(activity=_activity())
        channel = SimpleNamespace(id="19:chan@thread.tacv2", name="General")
        team = {"id": "team-1", "name": "Soporte", "aadGroupId": "group-1"}
        with patch("app.handlers.TeamsInfo.get_team_channels", new=AsyncMock(return_value=[channel])), \
                patch("app.handlers.TeamsInfo.get_team_details", new=AsyncMock(return_value=team)):
            asyncio.run(self.manager.resolve_and_dispatch(context, "/ticket"))

        self.assertEqual(self.command.calls, [])
        sent = self.context_manager.personal_context.send_activity.call_args.args[0]
        card = sent.attachments[0].content
        self.assertEqual(card["refresh"]["action"]["verb"], VERB_AUTH_REFRESH)
        self.assertEqual(card["refresh"]["userIds"], ["29:user"])
        payload = card["actions"][0]["data"]
        self.assertEqual(payload["command"], "/ticket")
        self.assertEqual(payload["team"]["aadGroupId"], "group-1")
        self.assertEqual(payload["channel"]["name"], "General")

    def test_auth_command_in_personal_chat_runs(self):
        self.command.needs_auth = True
        context = SimpleNamespace(activity=_activity("personal"))
        self.assertEqual(asyncio.run(self.manager.resolve_and_dispatch(context, "/ticket")), "ran")


class HandlerContextManagerTests(unittest.TestCase):
    def setUp(self):
        self.adapter = MagicMock()
        self.adapter.continue_conversation = AsyncMock()
        self.adapter.create_conversation = AsyncMock()
        self.manager = HandlerContextManager(self.adapter, "bot-app-id")

    def test_personal_context_runs_action_directly(self):
        action = AsyncMock()
        context = SimpleNamespace(activity=_activity("personal"))
        asyncio.run(self.manager.switch_to_personal_context(context, action))
        action.assert_awaited_once_with(context)
        self.adapter.create_conversation.assert_not_called()

    def test_creates_personal_conversation_and_remembers_it(self):
        action = AsyncMock()
        context = SimpleNamespace(activity=_activity("channel"))
        asyncio.run(self.manager.switch_to_personal_context(context, action))

        reference, callback, parameters = self.adapter.create_conversation.call_args.args
        self.assertIsInstance(parameters, ConversationParameters)
        self.assertFalse(parameters.is_group)
        self.assertEqual(parameters.tenant_id, "tenant-1")
        self.assertEqual(reference.conversation.id, "19:chan@thread.tacv2;messageid=123")

        personal = SimpleNamespace(activity=_activity("personal"))
        asyncio.run(callback(personal))
        action.assert_awaited_once_with(personal)
        self.assertIsNotNone(self.manager.reference_for(context))

    def test_reuses_remembered_reference(self):
        personal = SimpleNamespace(activity=_activity("personal"))
        self.manager.remember(personal)

        action = AsyncMock()
        context = SimpleNamespace(activity=_activity("channel"))
        asyncio.run(self.manager.switch_to_personal_context(context, action))
        self.adapter.continue_conversation.assert_awaited_once()
        self.assertEqual(self.adapter.continue_conversation.call_args.args[2], "bot-app-id")
        self.adapter.create_conversation.assert_not_called()

    def test_channel_conversations_are_not_remembered(self):
        context = SimpleNamespace(activity=_activity("channel"))
        self.manager.remember(context)
        self.assertIsNone(self.manager.reference_for(context))

    def test_run_dialog_without_manager(self):
        context = SimpleNamespace(activity=_activity("personal"))
        with self.assertRaises(RuntimeError):
            asyncio.run(self.manager.run_dialog(context, "authRefresh", {}))


if __name__ == "__main__":
    unittest.main()
