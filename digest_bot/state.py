"""Persisted run state and the build/send digest handoff."""

import json
import os
import tempfile
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from .logging_config import create_execution_logger
from .models import Digest, SentArticle, State

MAX_SENT_HISTORY = 500

STATE_FILE = "state.json"
DIGEST_FILE = "digest.json"


def update_state(
    prev: State,
    article_ids: Iterable[str],
    now: datetime,
    max_history: int = MAX_SENT_HISTORY,
) -> State:
    """Record delivered article ids in the ledger.

    Returns a new State: unseen ids are appended with `sent_at=now`, the ledger
    keeps the most recent `max_history` rows by insertion order, and `last_run`
    is set to `now`. Calling it twice with the same ids adds no extra rows.
    """
    ledger = list(prev.sent_articles)
    known = {item.id for item in ledger}
    for article_id in article_ids:
        if article_id in known:
            continue
        known.add(article_id)
        ledger.append(SentArticle(id=article_id, sent_at=now))

    if len(ledger) > max_history:
        ledger = ledger[len(ledger) - max_history :]

    new_state = prev.copy()
    new_state.sent_articles = ledger
    new_state.last_run = now
    return new_state


class StateStore:
    """JSON files under one directory, replaced atomically on every write."""

    def __init__(self, state_dir: str | Path, execution_id: str | None = None):
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILE
        self.digest_path = self.state_dir / DIGEST_FILE
        self.logger = create_execution_logger("state_store", execution_id)

    def load(self) -> State:
        """Read the state file.

        A missing file is an empty State. A corrupt file is copied next to the
        original with a `.broken` suffix and also yields an empty State.
        """
        data = self._read_json(self.state_path)
        if data is None:
            return State()
        try:
            state = State.from_dict(data)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            self._archive_broken(self.state_path, e)
            return State()
        self.logger.info(
            "Loaded state",
            sent_articles=len(state.sent_articles),
            recipients=len(state.recipients),
            external_cursor=state.external_cursor,
        )
        return state

    def save(self, state: State) -> None:
        self._write_json(self.state_path, state.to_dict())
        self.logger.info(
            "Saved state",
            sent_articles=len(state.sent_articles),
            last_run=state.last_run.isoformat() if state.last_run else None,
        )

    def load_digest(self) -> Digest | None:
        data = self._read_json(self.digest_path)
        if data is None:
            return None
        try:
            return Digest.from_dict(data)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            self._archive_broken(self.digest_path, e)
            return None

    def save_digest(self, digest: Digest) -> None:
        self._write_json(self.digest_path, digest.to_dict())
        self.logger.info(
            "Saved digest",
            messages=len(digest.messages),
            article_ids=len(digest.article_ids),
        )

    def delete_digest(self) -> None:
        try:
            self.digest_path.unlink()
        except FileNotFoundError:
            return
        self.logger.info("Deleted digest", path=str(self.digest_path))

    def _read_json(self, path: Path) -> Any:
        """Return the parsed document, or None if absent or unreadable JSON."""
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._archive_broken(path, e, raw)
            return None

    def _archive_broken(self, path: Path, error: Exception, raw: bytes | None = None) -> None:
        broken = path.with_name(path.name + ".broken")
        if raw is None:
            raw = path.read_bytes()
        broken.write_bytes(raw)
        self.logger.warning(
            f"Corrupt {path.name}, starting fresh (copy kept at {broken.name})",
            path=str(path),
            error=str(error),
        )

    def _write_json(self, path: Path, document: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}_", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
