"""
Tests for HistoryLedger.

Coverage:
- Append and newest-first listing with paging
- Durability across reload
- Duplicate ids rejected
- Daily count excludes rejected attempts and old entries
- Concurrent appends and listings stay consistent
"""

import json
import threading
import time
from datetime import timedelta

import pytest

from core.history import DuplicateAttempt, HistoryLedger
from core.models import (
    AttemptOutcome,
    RebalanceAttempt,
    RebalanceTier,
    RejectionReason,
    StepError,
    StepKind,
    StepResult,
    StepStatus,
)
from tests.helpers.vault_stubs import T0


def attempt(idx: int, outcome=AttemptOutcome.SUCCESS, minutes: int = 0, **kwargs) -> RebalanceAttempt:
    return RebalanceAttempt(
        id=f"attempt-{idx}",
        started_at=T0 + timedelta(minutes=minutes),
        finished_at=T0 + timedelta(minutes=minutes, seconds=30),
        tier=RebalanceTier.SOFT,
        outcome=outcome,
        trigger_asset="WETH",
        trigger_volatility=6.2,
        **kwargs,
    )


@pytest.fixture
def ledger(tmp_path):
    return HistoryLedger(str(tmp_path / "history.jsonl"))


def test_list_is_newest_first_with_paging(ledger):
    for i in range(5):
        ledger.append(attempt(i, minutes=i))

    assert [a.id for a in ledger.list()] == [f"attempt-{i}" for i in (4, 3, 2, 1, 0)]
    assert [a.id for a in ledger.list(limit=2)] == ["attempt-4", "attempt-3"]
    assert [a.id for a in ledger.list(limit=2, offset=3)] == ["attempt-1", "attempt-0"]
    assert ledger.list(limit=2, offset=10) == []


def test_reload_preserves_attempts(tmp_path):
    path = str(tmp_path / "history.jsonl")
    failed_step = StepResult(
        step_kind=StepKind.SWAP,
        status=StepStatus.FAILED,
        token="WETH",
        amount="0.3",
        error=StepError.CHAIN_REVERT,
        detail="reverted",
    )
    original = attempt(
        1,
        outcome=AttemptOutcome.PARTIAL_FAILURE,
        steps=(
            StepResult(step_kind=StepKind.WITHDRAW, status=StepStatus.OK, token="WETH", amount="0.3", tx_hash="0xabc"),
            failed_step,
        ),
        transaction_hashes=("0xabc",),
    )
    HistoryLedger(path).append(original)

    reloaded = HistoryLedger(path).list()
    assert reloaded == [original]
    assert reloaded[0].failed_step == failed_step


def test_duplicate_id_rejected(ledger):
    ledger.append(attempt(1))
    with pytest.raises(DuplicateAttempt):
        ledger.append(attempt(1))
    assert len(ledger) == 1


def test_torn_line_is_skipped(tmp_path):
    path = tmp_path / "history.jsonl"
    HistoryLedger(str(path)).append(attempt(1))
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"id": "attempt-2", "started_')

    assert [a.id for a in HistoryLedger(str(path)).list()] == ["attempt-1"]


def test_file_is_one_json_object_per_line(tmp_path, ledger):
    ledger.append(attempt(1))
    ledger.append(attempt(2))
    lines = ledger.history_file.read_text().splitlines()
    assert [json.loads(line)["id"] for line in lines] == ["attempt-1", "attempt-2"]


def test_daily_count_window(ledger):
    ledger.append(attempt(1, minutes=0))
    ledger.append(attempt(2, minutes=60, outcome=AttemptOutcome.PARTIAL_FAILURE))
    ledger.append(
        attempt(3, minutes=90, outcome=AttemptOutcome.REJECTED,
                forced=True, rejection_reason=RejectionReason.DISABLED)
    )

    assert ledger.daily_count(now=T0 + timedelta(hours=2)) == 2
    assert ledger.daily_count(now=T0 + timedelta(hours=24, minutes=30)) == 1
    assert ledger.daily_count(timedelta(minutes=30), now=T0 + timedelta(minutes=70)) == 1


def test_in_memory_ledger():
    ledger = HistoryLedger(None)
    ledger.append(attempt(1))
    assert ledger.history_file is None
    assert len(ledger.list()) == 1


def test_summary_shape(ledger):
    ledger.append(attempt(1, transaction_hashes=("0x1", "0x2")))
    summary = ledger.list()[0].to_summary()
    assert summary["type"] == "soft"
    assert summary["transactionHashes"] == ["0x1", "0x2"]
    assert summary["timestamp"] == int(T0.timestamp() * 1000)
    assert summary["failedStep"] is None


def test_append_after_torn_line_survives_reload(tmp_path):
    path = tmp_path / "history.jsonl"
    HistoryLedger(str(path)).append(attempt(1))
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"id": "attempt-2", "started_')

    HistoryLedger(str(path)).append(attempt(3))
    assert [a.id for a in HistoryLedger(str(path)).list()] == ["attempt-3", "attempt-1"]


def test_concurrent_append_and_list(tmp_path):
    path = str(tmp_path / "history.jsonl")
    ledger = HistoryLedger(path)
    writers, per_writer = 4, 25
    total = writers * per_writer
    snapshots = []
    errors = []
    done = threading.Event()

    def write(w):
        try:
            for i in range(per_writer):
                ledger.append(attempt(w * per_writer + i, minutes=i))
        except Exception as exc:
            errors.append(exc)

    def read():
        while not done.is_set():
            snapshots.append([a.id for a in ledger.list()])
            time.sleep(0.001)

    readers = [threading.Thread(target=read) for _ in range(2)]
    writer_threads = [threading.Thread(target=write, args=(w,)) for w in range(writers)]
    for t in readers + writer_threads:
        t.start()
    for t in writer_threads:
        t.join(timeout=30)
    done.set()
    for t in readers:
        t.join(timeout=30)

    assert errors == []
    final = [a.id for a in ledger.list()]
    assert len(final) == total == len(ledger)
    assert len(set(final)) == total

    # every listing is a newest-first view of some prefix of the append order
    append_order = list(reversed(final))
    for ids in snapshots:
        assert len(set(ids)) == len(ids)
        assert list(reversed(ids)) == append_order[:len(ids)]

    assert [a.id for a in HistoryLedger(path).list()] == final
