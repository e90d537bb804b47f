"""Unit tests for Telegram delivery and recipient discovery."""

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest
import requests

from digest_bot.config import TelegramConfig
from digest_bot.errors import TelegramAPIError
from digest_bot.models import Recipient, State
from digest_bot.telegram import (
    RecipientResolver,
    TelegramClient,
    TelegramSender,
    derive_recipient_name,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def http_response(status_code=200, body=None):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {"ok": True, "result": {}}
    return response


def recipient(name, chat_id):
    return Recipient(name=name, chat_id=chat_id, updated_at=NOW)


class RecordingSleeper:
    def __init__(self):
        self.delays = []

    def __call__(self, cancel, seconds):
        self.delays.append(seconds)


class TestTelegramClientUnit:
    """Unit tests for the Bot API wrapper."""

    def setup_method(self):
        self.session = Mock()
        self.session.headers = {}
        self.client = TelegramClient(TelegramConfig(bot_token="123:abc"), session=self.session)

    def test_send_message_posts_html(self):
        self.session.post.return_value = http_response()

        self.client.send_message("42", "<b>Hello</b>")

        url = self.session.post.call_args.args[0]
        payload = self.session.post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/bot123:abc/sendMessage"
        assert payload["chat_id"] == "42"
        assert payload["parse_mode"] == "HTML"
        assert payload["text"] == "<b>Hello</b>"

    def test_error_response_raises_with_details(self):
        self.session.post.return_value = http_response(
            429,
            {
                "ok": False,
                "description": "Too Many Requests: retry after 7",
                "parameters": {"retry_after": 7},
            },
        )

        with pytest.raises(TelegramAPIError) as exc_info:
            self.client.send_message("42", "hi")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7
        assert exc_info.value.retryable

    def test_transport_error_is_wrapped(self):
        self.session.post.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(TelegramAPIError) as exc_info:
            self.client.send_message("42", "hi")

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    def test_get_updates_passes_offset(self):
        self.session.get.return_value = http_response(
            body={"ok": True, "result": [{"update_id": 5}]}
        )

        updates = self.client.get_updates(offset=5)

        assert updates == [{"update_id": 5}]
        assert self.session.get.call_args.kwargs["params"]["offset"] == 5


class TestTelegramApiErrorUnit:
    def test_permanent_errors_are_not_retryable(self):
        assert not TelegramAPIError("Bad Request: chat not found", 400).retryable
        assert not TelegramAPIError("Forbidden: bot was blocked by the user", 403).retryable
        assert not TelegramAPIError("chat not found").retryable

    def test_server_errors_are_retryable(self):
        assert TelegramAPIError("Bad Gateway", 502).retryable


class TestTelegramSenderUnit:
    """Unit tests for best-effort delivery."""

    def make_sender(self, send_side_effect=None):
        client = Mock()
        client.send_message.side_effect = send_side_effect
        sleeper = RecordingSleeper()
        sender = TelegramSender(client, retry_attempts=3, backoff_factor=2.0, sleeper=sleeper)
        return sender, client, sleeper

    def test_sends_every_message_to_every_recipient(self):
        sender, client, _ = self.make_sender()

        sent = sender.send([recipient("a", "1"), recipient("b", "2")], ["m1", "m2"])

        assert sent == 4
        assert [c.args for c in client.send_message.call_args_list] == [
            ("1", "m1"),
            ("1", "m2"),
            ("2", "m1"),
            ("2", "m2"),
        ]

    def test_failure_for_one_recipient_does_not_stop_others(self):
        def send(chat_id, text):
            if chat_id == "1":
                raise TelegramAPIError("Forbidden: bot was blocked by the user", 403)

        sender, client, _ = self.make_sender(send)

        sent = sender.send([recipient("a", "1"), recipient("b", "2")], ["m1"])

        assert sent == 1
        assert client.send_message.call_count == 2

    def test_non_retryable_error_is_not_retried(self):
        sender, client, sleeper = self.make_sender(
            TelegramAPIError("Bad Request: chat not found", 400)
        )

        assert sender.send([recipient("a", "1")], ["m1"]) == 0
        assert client.send_message.call_count == 1
        assert not any(d >= 1 for d in sleeper.delays)

    def test_retry_after_is_honoured(self):
        sender, client, sleeper = self.make_sender(
            [TelegramAPIError("Too Many Requests", 429, retry_after=7), None]
        )

        assert sender.send([recipient("a", "1")], ["m1"]) == 1
        assert client.send_message.call_count == 2
        assert 7.0 in sleeper.delays

    def test_gives_up_after_retry_attempts(self):
        sender, client, sleeper = self.make_sender(TelegramAPIError("Bad Gateway", 502))

        assert sender.send([recipient("a", "1")], ["m1"]) == 0
        assert client.send_message.call_count == 3
        assert [d for d in sleeper.delays if d >= 1] == [2.0, 4.0]

    def test_empty_inputs_raise(self):
        sender, _, _ = self.make_sender()

        with pytest.raises(ValueError):
            sender.send([], ["m1"])
        with pytest.raises(ValueError):
            sender.send([recipient("a", "1")], [])


class TestRecipientResolverUnit:
    """Unit tests for recipient discovery."""

    def make_resolver(self, updates, auto_subscribe=True):
        client = Mock()
        client.get_updates.return_value = updates
        return RecipientResolver(client, auto_subscribe, clock=lambda: NOW), client

    def test_adds_new_chats_and_advances_cursor(self):
        updates = [
            {"update_id": 11, "message": {"chat": {"id": 200, "username": "zoe"}}},
            {"update_id": 12, "message": {"chat": {"id": 100, "first_name": "Al", "last_name": "Bo"}}},
        ]
        resolver, client = self.make_resolver(updates)
        state = State(external_cursor=10)

        new_state, recipients = resolver.resolve(state)

        client.get_updates.assert_called_once_with(offset=11)
        assert [(r.name, r.chat_id) for r in recipients] == [("Al Bo", "100"), ("zoe", "200")]
        assert new_state.recipients == recipients
        assert new_state.external_cursor == 12
        assert state.external_cursor == 10
        assert state.recipients == []

    def test_cursor_never_decreases(self):
        resolver, _ = self.make_resolver([{"update_id": 3}])

        new_state, _ = resolver.resolve(State(external_cursor=50))

        assert new_state.external_cursor == 50

    def test_known_recipient_is_not_duplicated(self):
        known = recipient("zoe", "200")
        updates = [{"update_id": 11, "message": {"chat": {"id": 200, "username": "zoe"}}}]
        resolver, _ = self.make_resolver(updates)

        new_state, recipients = resolver.resolve(State(recipients=[known], external_cursor=10))

        assert recipients == [known]

    def test_updates_without_message_only_move_cursor(self):
        resolver, _ = self.make_resolver([{"update_id": 20, "edited_message": {}}])

        new_state, recipients = resolver.resolve(State(external_cursor=10))

        assert recipients == []
        assert new_state.external_cursor == 20

    def test_auto_subscribe_disabled_skips_api(self):
        resolver, client = self.make_resolver([], auto_subscribe=False)
        state = State(recipients=[recipient("b", "2"), recipient("a", "1")], external_cursor=4)

        new_state, recipients = resolver.resolve(state)

        client.get_updates.assert_not_called()
        assert [r.name for r in recipients] == ["a", "b"]
        assert new_state.external_cursor == 4

    def test_api_error_propagates(self):
        client = Mock()
        client.get_updates.side_effect = TelegramAPIError("Unauthorized", 401)
        resolver = RecipientResolver(client)

        with pytest.raises(TelegramAPIError):
            resolver.resolve(State())


class TestDeriveRecipientName:
    def test_name_preference_order(self):
        assert derive_recipient_name({"chat": {"id": 1, "username": "chatuser"}, "from": {"username": "u"}}) == "chatuser"
        assert derive_recipient_name({"chat": {"id": 1}, "from": {"username": "sender"}}) == "sender"
        assert derive_recipient_name({"chat": {"id": 1, "title": "News Group"}}) == "News Group"
        assert derive_recipient_name({"chat": {"id": 1, "first_name": "Ann"}}) == "Ann"
        assert derive_recipient_name({"chat": {"id": 7}}) == "chat-7"
