"""
ViVault Automation Core: Rebalance History Ledger

Append-only record of finalized rebalance attempts.

Output format: JSONL (one attempt per line), fsynced on every append and
reloaded at startup. There is no update or delete path.
"""

import json
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional
import logging

from core.models import AttemptOutcome, RebalanceAttempt

logger = logging.getLogger(__name__)


class DuplicateAttempt(ValueError):
    """Raised when an attempt id is already in the ledger."""


class HistoryLedger:
    """
    Durable attempt history.

    Args:
        history_file: Path to JSONL file (default: data/rebalance_history.jsonl);
            None keeps the ledger in memory only
    """

    def __init__(self, history_file: Optional[str] = "data/rebalance_history.jsonl"):
        self._lock = threading.Lock()
        self._attempts: List[RebalanceAttempt] = []
        self._ids = set()

        self.history_file = Path(history_file) if history_file else None
        if self.history_file is not None:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            self._load()

        logger.info(
            f"Initialized HistoryLedger at {self.history_file or '<memory>'} "
            f"({len(self._attempts)} attempt(s))"
        )

    def _load(self) -> None:
        if not self.history_file.exists():
            return

        with open(self.history_file, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    attempt = RebalanceAttempt.from_dict(json.loads(line))
                except (ValueError, KeyError) as e:
                    # A torn final write is the only expected corruption
                    logger.error(f"Skipping unreadable history line {lineno}: {e}")
                    continue
                if attempt.id in self._ids:
                    continue
                self._attempts.append(attempt)
                self._ids.add(attempt.id)

        # Terminate a torn last line so the next append starts on its own line
        with open(self.history_file, "rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() > 0:
                f.seek(-1, os.SEEK_END)
                torn = f.read(1) != b"\n"
            else:
                torn = False
        if torn:
            with open(self.history_file, "a", encoding="utf-8") as f:
                f.write("\n")

    def append(self, attempt: RebalanceAttempt) -> None:
        """
        Record a finalized attempt.

        Raises:
            DuplicateAttempt: id already recorded
        """
        with self._lock:
            if attempt.id in self._ids:
                raise DuplicateAttempt(f"Attempt {attempt.id} already recorded")

            if self.history_file is not None:
                with open(self.history_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(attempt.to_dict(), default=str) + "\n")
                    f.flush()
                    os.fsync(f.fileno())

            self._attempts.append(attempt)
            self._ids.add(attempt.id)

        logger.debug(f"Recorded attempt {attempt.id[:8]} ({attempt.outcome.value})")

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[RebalanceAttempt]:
        """Attempts newest first"""
        with self._lock:
            newest_first = list(reversed(self._attempts))
        end = None if limit is None else offset + limit
        return newest_first[offset:end]

    def daily_count(self, window: timedelta = timedelta(hours=24), now: Optional[datetime] = None) -> int:
        """Non-rejected attempts started within `window` of `now`"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - window
        with self._lock:
            return sum(
                1 for attempt in self._attempts
                if attempt.outcome is not AttemptOutcome.REJECTED and attempt.started_at > cutoff
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)


__all__ = ["HistoryLedger", "DuplicateAttempt"]
