"""Telegram delivery and recipient discovery for RSS Digest Bot."""

import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import requests

from .config import TelegramConfig
from .errors import TelegramAPIError
from .logging_config import create_execution_logger
from .models import Recipient, State
from .pacing import RequestPacer, check_cancelled, wait_or_cancel

# Telegram allows about 30 messages per second per bot
MIN_SEND_INTERVAL = 1 / 30
MAX_RETRY_DELAY = 30.0


class TelegramClient:
    """Thin wrapper over the Bot API methods used by the bot."""

    def __init__(
        self,
        config: TelegramConfig,
        session: requests.Session | None = None,
        execution_id: str | None = None,
    ):
        self.config = config
        self.base_url = f"https://api.telegram.org/bot{config.bot_token}"
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "RSS-Digest-Bot/1.0"})
        self.logger = create_execution_logger("telegram_client", execution_id)

    def send_message(self, chat_id: str, text: str) -> dict[str, Any]:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": self.config.parse_mode,
            "disable_web_page_preview": True,
        }
        return self._call("sendMessage", json=payload)

    def get_updates(self, offset: int = 0, timeout: int = 0) -> list[dict[str, Any]]:
        params = {"timeout": timeout}
        if offset > 0:
            params["offset"] = offset
        result = self._call("getUpdates", params=params)
        return result if isinstance(result, list) else []

    def _call(self, method: str, **kwargs) -> Any:
        """Call a Bot API method and return its `result`.

        Raises:
            TelegramAPIError: On transport errors, HTTP errors or `ok: false`
        """
        url = f"{self.base_url}/{method}"
        try:
            if "json" in kwargs:
                response = self.session.post(url, timeout=self.config.timeout, **kwargs)
            else:
                response = self.session.get(url, timeout=self.config.timeout, **kwargs)
        except requests.RequestException as e:
            raise TelegramAPIError(f"{method} request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("ok", False):
            parameters = body.get("parameters") or {}
            description = body.get("description") or f"HTTP {response.status_code}"
            raise TelegramAPIError(
                f"{method} failed: {description}",
                status_code=response.status_code,
                retry_after=parameters.get("retry_after"),
            )
        return body.get("result")


class TelegramSender:
    """Best-effort delivery of every message to every recipient."""

    def __init__(
        self,
        client: TelegramClient,
        retry_attempts: int = 3,
        backoff_factor: float = 2.0,
        sleeper: Callable[[threading.Event | None, float], None] = wait_or_cancel,
        execution_id: str | None = None,
    ):
        self.client = client
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_factor = backoff_factor
        self._sleeper = sleeper
        self.logger = create_execution_logger("telegram_sender", execution_id)

    def send(
        self,
        recipients: list[Recipient],
        messages: list[str],
        cancel: threading.Event | None = None,
    ) -> int:
        """Send all messages to all recipients.

        A failure for one recipient is logged and the batch continues.

        Returns:
            Number of messages delivered

        Raises:
            ValueError: If recipients or messages are empty
            RunCancelledError: If the run is cancelled
        """
        if not recipients:
            raise ValueError("no recipients provided")
        if not messages:
            raise ValueError("no messages to send")

        total = len(recipients) * len(messages)
        self.logger.info(
            f"Sending {len(messages)} message(s) to {len(recipients)} recipient(s)",
            stage="dispatch",
            total_messages=total,
        )

        pacer = RequestPacer(MIN_SEND_INTERVAL, sleeper=self._sleeper)
        sent = 0
        for recipient in recipients:
            for index, message in enumerate(messages, start=1):
                pacer.wait(cancel)
                try:
                    self.send_with_retry(recipient.chat_id, message, cancel)
                except TelegramAPIError as e:
                    self.logger.error(
                        f"Failed to send message {index} to {recipient.name}: {e}",
                        stage="dispatch",
                        chat_id=recipient.chat_id,
                        status_code=e.status_code,
                    )
                    continue
                finally:
                    pacer.mark()
                sent += 1

        self.logger.info(
            f"Successfully sent {sent}/{total} messages",
            stage="dispatch",
            sent=sent,
            failed=total - sent,
        )
        return sent

    def send_with_retry(
        self, chat_id: str, text: str, cancel: threading.Event | None = None
    ) -> None:
        for attempt in range(self.retry_attempts):
            try:
                self.client.send_message(chat_id, text)
                return
            except TelegramAPIError as e:
                if not e.retryable or attempt == self.retry_attempts - 1:
                    raise
                delay = self.retry_delay(e, attempt)
                self.logger.warning(
                    f"Send to {chat_id} failed, retrying in {delay:.1f}s (attempt {attempt + 1})",
                    chat_id=chat_id,
                    attempt=attempt + 1,
                    status_code=e.status_code,
                )
                self._sleeper(cancel, delay)

    def retry_delay(self, error: TelegramAPIError, attempt: int) -> float:
        if error.retry_after:
            return float(error.retry_after)
        return min(self.backoff_factor ** (attempt + 1), MAX_RETRY_DELAY)


def derive_recipient_name(message: dict[str, Any]) -> str:
    """Pick a display name for the chat a message came from."""
    chat = message.get("chat") or {}
    sender = message.get("from") or {}
    if chat.get("username"):
        return chat["username"]
    if sender.get("username"):
        return sender["username"]
    if chat.get("title"):
        return chat["title"]
    full_name = f"{chat.get('first_name', '')} {chat.get('last_name', '')}".strip()
    if full_name:
        return full_name
    return f"chat-{chat.get('id')}"


class RecipientResolver:
    """Subscribes chats that have written to the bot since the last run."""

    def __init__(
        self,
        client: TelegramClient,
        auto_subscribe: bool = True,
        clock: Callable[[], datetime] | None = None,
        execution_id: str | None = None,
    ):
        self.client = client
        self.auto_subscribe = auto_subscribe
        self.clock = clock or (lambda: datetime.now(UTC))
        self.logger = create_execution_logger("recipient_resolver", execution_id)

    def resolve(
        self, state: State, cancel: threading.Event | None = None
    ) -> tuple[State, list[Recipient]]:
        """Return an updated copy of the state and the recipients sorted by name.

        The update cursor never moves backwards.

        Raises:
            TelegramAPIError: If getUpdates fails
        """
        known: dict[str, Recipient] = {r.chat_id: r for r in state.recipients if r.chat_id}
        cursor = state.external_cursor
        added = 0

        if self.auto_subscribe:
            check_cancelled(cancel)
            updates = self.client.get_updates(offset=state.external_cursor + 1)
            now = self.clock()
            for update in updates:
                update_id = update.get("update_id")
                if isinstance(update_id, int) and update_id > cursor:
                    cursor = update_id
                message = update.get("message")
                if not message or not (message.get("chat") or {}).get("id"):
                    continue

                chat_id = str(message["chat"]["id"])
                name = derive_recipient_name(message)
                existing = known.get(chat_id)
                if existing is not None and existing.name == name:
                    continue
                if existing is None:
                    added += 1
                known[chat_id] = Recipient(name=name, chat_id=chat_id, updated_at=now)

        recipients = sorted(known.values(), key=lambda r: r.name)
        new_state = state.copy()
        new_state.recipients = recipients
        new_state.external_cursor = cursor

        self.logger.info(
            f"Resolved {len(recipients)} recipient(s)",
            stage="recipients",
            new_recipients=added,
            external_cursor=cursor,
        )
        return new_state, recipients
