import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from botbuilder.core import ConversationState, MemoryStorage
from botbuilder.dialogs import Dialog, DialogReason
from botbuilder.schema import Activity, ActivityTypes, ConversationAccount

from app.dialogs import (
    AuthCommandDispatchDialog,
    DialogAlreadyRegisteredError,
    DialogManager,
    DialogNotFoundError,
    SIGNIN_FAILED_TEXT,
)
from app.handlers import ContextHint


def _signin_context(value_id="exchange-1", name="signin/tokenExchange", conversation_id="conv-1"):
    activity = Activity(
        type=ActivityTypes.invoke,
        name=name,
        channel_id="msteams",
        conversation=ConversationAccount(id=conversation_id),
        value={"id": value_id, "connectionName": "graph", "token": "abc"},
    )
    return SimpleNamespace(activity=activity)


class DialogManagerTests(unittest.TestCase):
    def test_unknown_dialog(self):
        manager = DialogManager()
        with self.assertRaises(DialogNotFoundError) as raised:
            manager.dialog("authRefresh")
        self.assertEqual(str(raised.exception), "Dialog authRefresh not found")

    def test_duplicate_registration(self):
        manager = DialogManager()
        dialog = SimpleNamespace(dialog_name="authRefresh")
        manager.register_dialog(dialog)
        with self.assertRaises(DialogAlreadyRegisteredError):
            manager.register_dialog(SimpleNamespace(dialog_name="authRefresh"))

    def test_delegates_to_dialog(self):
        manager = DialogManager()
        dialog = MagicMock()
        dialog.dialog_name = "authRefresh"
        dialog.run = AsyncMock(return_value="started")
        dialog.continue_run = AsyncMock(return_value="continued")
        dialog.stop = AsyncMock(return_value="stopped")
        manager.register_dialog(dialog)

        context = object()
        self.assertEqual(asyncio.run(manager.run_dialog(context, "authRefresh", {"data": {}})), "started")
        self.assertEqual(asyncio.run(manager.continue_dialog(context, "authRefresh")), "continued")
        self.assertEqual(asyncio.run(manager.stop_dialog(context, "authRefresh")), "stopped")
        dialog.run.assert_awaited_once_with(context, {"data": {}})


class SigninDedupTests(unittest.TestCase):
    def setUp(self):
        self.storage = MemoryStorage()
        self.dialog = AuthCommandDispatchDialog(
            "graph",
            ConversationState(MemoryStorage()),
            self.storage,
            handler_manager=MagicMock(),
        )

    def _dedup(self, context):
        return asyncio.run(self.dialog._should_dedup(context))

    def test_storage_key(self):
        key = AuthCommandDispatchDialog.storage_key(_signin_context())
        self.assertEqual(key, "msteams/conv-1/exchange-1")

    def test_storage_key_requires_signin_invoke(self):
        message = SimpleNamespace(activity=Activity(type="message", conversation=ConversationAccount(id="c")))
        with self.assertRaises(ValueError):
            AuthCommandDispatchDialog.storage_key(message)

    def test_first_repeat_is_already_duplicate(self):
        results = [self._dedup(_signin_context(name="signin/verifyState")) for _ in range(3)]
        self.assertEqual(results, [False, True, True])

    def test_other_exchange_ids_pass(self):
        self.assertFalse(self._dedup(_signin_context()))
        self.assertTrue(self._dedup(_signin_context()))
        self.assertFalse(self._dedup(_signin_context(value_id="exchange-2")))
        self.assertFalse(self._dedup(_signin_context(conversation_id="conv-2")))

    def test_non_signin_activities_are_never_deduplicated(self):
        context = SimpleNamespace(activity=Activity(type="message", conversation=ConversationAccount(id="c")))
        self.assertFalse(self._dedup(context))
        self.assertFalse(self._dedup(context))

    def test_pending_card_is_consumed_once(self):
        self.dialog._pending_cards["card-1"] = {"command": "/ticket"}
        self.assertEqual(self.dialog.pending_card("card-1"), {"command": "/ticket"})
        self.assertIsNone(self.dialog.pending_card("card-1"))
        self.assertIsNone(self.dialog.pending_card(None))

    def test_end_of_dialog_clears_only_that_conversation(self):
        self._dedup(_signin_context(conversation_id="conv-1"))
        self._dedup(_signin_context(conversation_id="conv-2"))
        self.dialog._pending_cards["card-1"] = {"command": "/ticket", "conversation_id": "conv-1"}
        self.dialog._pending_cards["card-2"] = {"command": "/ticket", "conversation_id": "conv-2"}

        asyncio.run(self.dialog.on_end_dialog(_signin_context(conversation_id="conv-1"), None, DialogReason.EndCalled))

        stored = asyncio.run(self.storage.read(["msteams/conv-1/exchange-1", "msteams/conv-2/exchange-1"]))
        self.assertEqual(list(stored), ["msteams/conv-2/exchange-1"])
        self.assertEqual(list(self.dialog._pending_cards), ["card-2"])
        # a mesma troca volta a valer depois que o diálogo terminou
        self.assertFalse(self._dedup(_signin_context(conversation_id="conv-1")))


def _step(options=None, result=None):
    context = SimpleNamespace(
        activity=Activity(type="message", channel_id="msteams", conversation=ConversationAccount(id="conv-1")),
        send_activity=AsyncMock(return_value=SimpleNamespace(id="oauth-card-1")),
    )
    return SimpleNamespace(
        context=context,
        options=options if options is not None else {},
        result=result,
        begin_dialog=AsyncMock(),
        next=AsyncMock(return_value="next"),
        end_dialog=AsyncMock(return_value="ended"),
    )


class OAuthWaterfallTests(unittest.TestCase):
    def setUp(self):
        self.handler_manager = MagicMock()
        self.handler_manager.resolve_and_dispatch = AsyncMock()
        self.dialog = AuthCommandDispatchDialog(
            "graph",
            ConversationState(MemoryStorage()),
            MemoryStorage(),
            handler_manager=self.handler_manager,
        )

    def test_prompt_step_records_sent_oauth_card(self):
        step = _step(options={"data": {"command": "/ticket"}})
        original_send = step.context.send_activity

        async def _send_oauth_card(dialog_id):
            await step.context.send_activity("oauth card")

        step.begin_dialog.side_effect = _send_oauth_card
        result = asyncio.run(self.dialog._prompt_step(step))

        self.assertIs(result, Dialog.end_of_turn)
        self.assertIs(step.context.send_activity, original_send)
        self.assertEqual(step.options["oauth_activity_id"], "oauth-card-1")
        self.assertEqual(
            self.dialog.pending_card("oauth-card-1"),
            {"command": "/ticket", "conversation_id": "conv-1"},
        )

    def test_prompt_step_failure_moves_on(self):
        step = _step(options={"data": {"command": "/ticket"}})
        step.begin_dialog.side_effect = RuntimeError("no connection")
        self.assertEqual(asyncio.run(self.dialog._prompt_step(step)), "next")
        step.next.assert_awaited_once_with(None)
        self.assertEqual(self.dialog._pending_cards, {})

    def test_dedup_step_stops_duplicate_exchange(self):
        token = SimpleNamespace(token="tok")
        first = _step(result=token)
        first.context = _signin_context()
        self.assertEqual(asyncio.run(self.dialog._dedup_step(first)), "next")
        first.next.assert_awaited_once_with(token)

        repeat = _step(result=token)
        repeat.context = _signin_context()
        self.assertIs(asyncio.run(self.dialog._dedup_step(repeat)), Dialog.end_of_turn)
        repeat.next.assert_not_called()

    def test_dispatch_without_token_reports_failure(self):
        step = _step(options={"data": {"command": "/ticket"}}, result=None)
        self.assertEqual(asyncio.run(self.dialog._dispatch_step(step)), "ended")
        step.context.send_activity.assert_awaited_once_with(SIGNIN_FAILED_TEXT)
        self.handler_manager.resolve_and_dispatch.assert_not_called()

    def test_dispatch_with_token_reruns_command(self):
        token = SimpleNamespace(token="tok")
        data = {"command": "/ticket", "team": {"id": "team-1"}}
        step = _step(options={"data": data}, result=token)
        self.assertEqual(asyncio.run(self.dialog._dispatch_step(step)), "ended")

        self.handler_manager.resolve_and_dispatch.assert_awaited_once_with(
            step.context,
            "/ticket",
            {"command": "/ticket", "team": {"id": "team-1"}, "hint": ContextHint.DIALOG, "token": "tok"},
        )
        step.end_dialog.assert_awaited_once_with(token)

    def test_dispatch_errors_still_end_dialog(self):
        self.handler_manager.resolve_and_dispatch.side_effect = RuntimeError("boom")
        step = _step(options={"data": {"command": "/ticket"}}, result=SimpleNamespace(token="tok"))
        self.assertEqual(asyncio.run(self.dialog._dispatch_step(step)), "ended")


if __name__ == "__main__":
    unittest.main()
