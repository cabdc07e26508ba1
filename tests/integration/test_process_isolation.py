# tests/integration/test_process_isolation.py
"""End-to-end runs with one OS process per chunk.

Mostly uses the default transformer factory with the echo provider, so the
factory, settings, cancellation token and outcome queue all cross the
process boundary exactly as in production.
"""

import multiprocessing
import threading
import time
from functools import partial
from pathlib import Path

import pytest

from lexiforge.contracts import ChunkStatus, Isolation
from lexiforge.engine.supervisor import Supervisor
from lexiforge.plugins.llm.echo import placeholder_record
from lexiforge.testing import StallingTransformer, make_settings

pytestmark = pytest.mark.slow


def _write_words(tmp_path: Path, count: int) -> list[str]:
    words = [f"word{i:03d}" for i in range(count)]
    (tmp_path / "words.txt").write_text("\n".join(words) + "\n", encoding="utf-8")
    return words


def test_process_run_produces_global_result(tmp_path: Path) -> None:
    words = _write_words(tmp_path, 23)
    settings = make_settings(tmp_path, batch_size=4, num_workers=3, coalesce_every=2, isolation=Isolation.PROCESS)

    supervisor = Supervisor(settings, install_signal_handlers=False)
    summary = supervisor.run(start_index=0)

    assert summary.ok
    assert [o.status for o in summary.outcomes] == [ChunkStatus.SUCCEEDED] * 3
    assert sum(o.words_processed for o in summary.outcomes) == 23
    assert supervisor.store.read_global_result() == {w: placeholder_record(w) for w in words}


def test_later_run_extends_global_result(tmp_path: Path) -> None:
    words = _write_words(tmp_path, 10)
    settings = make_settings(tmp_path, batch_size=2, num_workers=2, isolation=Isolation.PROCESS)

    first = Supervisor(settings, install_signal_handlers=False).run(start_index=6)
    assert first.ok

    supervisor = Supervisor(settings, install_signal_handlers=False)
    second = supervisor.run(start_index=0)

    assert second.ok
    assert supervisor.store.read_global_result() == {w: placeholder_record(w) for w in words}


def test_grace_expiry_terminates_stalled_process(tmp_path: Path) -> None:
    words = _write_words(tmp_path, 4)
    settings = make_settings(
        tmp_path, batch_size=2, num_workers=1, isolation=Isolation.PROCESS, termination_grace_seconds=0.5
    )
    supervisor = Supervisor(settings, partial(StallingTransformer, 30.0), install_signal_handlers=False)
    timer = threading.Timer(1.0, supervisor.cancel)
    timer.start()
    try:
        started = time.monotonic()
        summary = supervisor.run(start_index=0)
        elapsed = time.monotonic() - started
    finally:
        timer.cancel()

    assert elapsed < 20
    assert multiprocessing.active_children() == []
    assert summary.cancelled
    assert summary.outcomes[0].status == ChunkStatus.CANCELLED
    assert summary.outcomes[0].last_processed_index == 0
    assert summary.finalized is False
    store = supervisor.store
    assert not store.has_final_artifact(0)
    descriptor = store.read_progress(0)
    assert descriptor is not None
    assert descriptor.last_committed_index == 0

    resumed = Supervisor(settings, install_signal_handlers=False)
    assert resumed.run().ok
    assert resumed.store.read_global_result() == {w: placeholder_record(w) for w in words}
