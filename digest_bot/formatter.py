"""Digest message formatting for Telegram HTML parse mode."""

from collections.abc import Callable
from datetime import UTC, datetime

from .logging_config import create_execution_logger
from .models import DEFAULT_CATEGORY, DigestEntry

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
# Room kept free in every message for the "Digest (i/n) - date" header
HEADER_RESERVE = 50
HEADER_TEMPLATE = "Digest ({index}/{total}) - {date}\n\n"
BLOCK_SEPARATOR = "\n\n"
ELLIPSIS = "..."


def escape_html(text: str) -> str:
    """Escape HTML characters in text for Telegram HTML parsing."""
    if not text:
        return ""

    text = text.replace("&", "&amp;")
    text = text.replace("<", "&lt;")
    text = text.replace(">", "&gt;")
    text = text.replace('"', "&quot;")
    text = text.replace("'", "&#x27;")

    return text


def truncate_escaped(text: str, limit: int) -> str:
    """Escape `text` and cut it so the result is at most `limit` characters.

    Cuts happen between source characters, never inside an entity.
    """
    escaped = escape_html(text)
    if len(escaped) <= limit:
        return escaped

    budget = limit - len(ELLIPSIS)
    parts: list[str] = []
    used = 0
    for char in text:
        piece = escape_html(char)
        if used + len(piece) > budget:
            break
        parts.append(piece)
        used += len(piece)
    return "".join(parts) + ELLIPSIS if budget > 0 else ""


class MessageFormatter:
    """Groups entries by category and packs them into Telegram-sized messages."""

    def __init__(
        self,
        categories: list[str] | None = None,
        max_messages: int = 0,
        now: Callable[[], datetime] | None = None,
        max_length: int = TELEGRAM_MAX_MESSAGE_LENGTH,
        execution_id: str | None = None,
    ):
        """Initialize the formatter.

        Args:
            categories: Preferred category order; unknown categories follow alphabetically
            max_messages: Maximum number of messages to produce (0 = unlimited)
            now: Clock used for the header date
            max_length: Maximum characters per message
            execution_id: Execution ID for logging context
        """
        self.categories = list(categories or [])
        self.max_messages = max_messages
        self.now = now or (lambda: datetime.now(UTC))
        self.max_length = max_length
        self.logger = create_execution_logger("formatter", execution_id)

    @property
    def body_limit(self) -> int:
        return self.max_length - HEADER_RESERVE

    def build_messages(self, entries: list[DigestEntry]) -> list[str]:
        """Format entries into messages that each fit within `max_length`."""
        messages, _ = self.build_digest(entries)
        return messages

    def build_digest(self, entries: list[DigestEntry]) -> tuple[list[str], list[str]]:
        """Format entries and report which of them made it into the messages.

        Returns:
            (messages, ids of the entries the messages carry). With a message
            cap, entries that only appeared in dropped messages are left out.
        """
        if not entries:
            return [], []

        grouped = self.group_by_category(entries)
        blocks = [self.format_category(category, items) for category, items in grouped]
        messages = self.pack_blocks(blocks)
        carried = [entry.id for _, items in grouped for entry in items]

        if self.max_messages and len(messages) > self.max_messages:
            messages = messages[: self.max_messages]
            kept_lines = sum(1 for m in messages for line in m.split("\n") if line)
            carried = self.carried_ids(grouped, kept_lines)
            self.logger.warning(
                f"Digest truncated to {self.max_messages} messages, "
                f"{len(entries) - len(carried)} entries dropped",
                stage="format",
                dropped_entries=len(entries) - len(carried),
            )

        if len(messages) > 1:
            messages = self.add_headers(messages)

        self.logger.info(
            f"Formatted {len(carried)} entries into {len(messages)} message(s)",
            stage="format",
            categories=len(blocks),
        )
        return messages, carried

    @staticmethod
    def carried_ids(grouped: list[tuple[str, list[DigestEntry]]], line_count: int) -> list[str]:
        """Ids of the entries within the first `line_count` non-empty lines.

        Blocks are packed and split in order with one line per category header
        and per entry, so the kept messages hold a prefix of those lines.
        """
        ids: list[str] = []
        remaining = line_count
        for _, items in grouped:
            remaining -= 1
            for entry in items:
                if remaining <= 0:
                    return ids
                ids.append(entry.id)
                remaining -= 1
        return ids

    def group_by_category(self, entries: list[DigestEntry]) -> list[tuple[str, list[DigestEntry]]]:
        grouped: dict[str, list[DigestEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.category or DEFAULT_CATEGORY, []).append(entry)

        position = {name: i for i, name in enumerate(self.categories)}
        ordered = sorted(
            grouped,
            key=lambda name: (0, position[name], "") if name in position else (1, 0, name),
        )
        return [(name, grouped[name]) for name in ordered]

    def format_category(self, category: str, entries: list[DigestEntry]) -> str:
        header = f"<b>{escape_html(category)}</b>"
        # every entry must fit in one message together with the category header
        limit = self.body_limit - len(header) - 1
        lines = [header]
        lines.extend(self.format_entry(entry, limit) for entry in entries)
        return "\n".join(lines)

    def format_entry(self, entry: DigestEntry, limit: int | None = None) -> str:
        limit = limit or self.body_limit
        title = " ".join(entry.title.split())
        summary = " ".join(entry.summary.split())
        link = f'<a href="{escape_html(entry.url.strip())}">{escape_html(title)}</a>'
        line = f"{link} - {escape_html(summary)}" if summary else link
        if len(line) <= limit:
            return line

        prefix = f"{link} - "
        if len(prefix) + len(ELLIPSIS) < limit:
            return prefix + truncate_escaped(summary, limit - len(prefix))
        return truncate_escaped(title, limit)

    def pack_blocks(self, blocks: list[str]) -> list[str]:
        """Pack category blocks into messages, splitting a block by line only when it
        cannot fit in a message of its own."""
        messages: list[str] = []
        current = ""

        for block in blocks:
            if len(block) > self.body_limit:
                if current:
                    messages.append(current)
                    current = ""
                messages.extend(self.split_block(block))
                continue

            candidate = f"{current}{BLOCK_SEPARATOR}{block}" if current else block
            if len(candidate) > self.body_limit:
                messages.append(current)
                current = block
            else:
                current = candidate

        if current:
            messages.append(current)
        return messages

    def split_block(self, block: str) -> list[str]:
        parts: list[str] = []
        current = ""
        for line in block.split("\n"):
            candidate = f"{current}\n{line}" if current else line
            if len(candidate) > self.body_limit and current:
                parts.append(current)
                current = line
            else:
                current = candidate
        if current:
            parts.append(current)
        return parts

    def add_headers(self, messages: list[str]) -> list[str]:
        total = len(messages)
        date = self.now().strftime("%d %B %Y")
        return [
            HEADER_TEMPLATE.format(index=i, total=total, date=date) + message
            for i, message in enumerate(messages, start=1)
        ]
