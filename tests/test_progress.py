import json
import threading
import time

import pytest

from bulkops.progress import ProgressTracker


def test_update_clamps_progress_and_merges_fields():
    tracker = ProgressTracker()
    tracker.start("op", total=10, metadata={"type": "import"})

    state = tracker.update("op", progress=15, message="nearly", metadata={"succeeded": 3})
    assert state.progress == 10
    assert state.message == "nearly"
    assert state.metadata == {"type": "import", "succeeded": 3}

    assert tracker.update("op", progress=-4).progress == 0
    assert tracker.get("op").percentage == 0


def test_complete_fills_progress_and_terminal_states_are_final():
    tracker = ProgressTracker()
    tracker.start("op", total=5)
    done = tracker.complete("op", message="Done")
    assert done.status == "completed"
    assert done.progress == 5
    assert done.end_time is not None

    assert tracker.fail("op", error="late").status == "completed"
    assert tracker.update("op", progress=1).progress == 5
    assert tracker.active() == []


def test_unknown_operations_return_none():
    tracker = ProgressTracker()
    assert tracker.update("missing", progress=1) is None
    assert tracker.complete("missing") is None
    assert tracker.cancel("missing") is None
    assert tracker.get("missing") is None


def test_listeners_receive_events():
    tracker = ProgressTracker()
    updates = []
    everything = []
    tracker.add_listener("update", lambda op_id, state: updates.append((op_id, state.progress)))
    tracker.add_listener("*", lambda event, op_id, state: everything.append(event))

    tracker.start("op", total=2)
    tracker.update("op", progress=1)
    tracker.fail("op", error="boom")

    assert updates == [("op", 1)]
    assert everything == ["start", "update", "fail"]
    assert tracker.get("op").error == "boom"


def test_failing_listener_does_not_block_others():
    tracker = ProgressTracker()
    seen = []

    def broken(op_id, state):
        raise RuntimeError("listener bug")

    tracker.add_listener("start", broken)
    tracker.add_listener("start", lambda op_id, state: seen.append(op_id))

    tracker.start("op")
    assert seen == ["op"]


def test_listener_remover_and_bulk_removal():
    tracker = ProgressTracker()
    seen = []
    remove = tracker.add_listener("start", lambda op_id, state: seen.append(op_id))
    tracker.start("a")
    remove()
    tracker.start("b")
    assert seen == ["a"]

    tracker.add_listener("*", lambda *args: seen.append("any"))
    tracker.remove_all_listeners()
    tracker.start("c")
    assert seen == ["a"]


def test_unknown_event_name_is_rejected():
    with pytest.raises(ValueError):
        ProgressTracker().add_listener("finish", lambda *a: None)


def test_cancel_runs_registered_callback_once():
    tracker = ProgressTracker()
    calls = []
    tracker.start("op")
    tracker.register_cancellation("op", lambda: calls.append(1))

    state = tracker.cancel("op")
    tracker.cancel("op")

    assert state.status == "cancelled"
    assert calls == [1]


def test_cancellation_callback_must_be_callable():
    with pytest.raises(TypeError):
        ProgressTracker().register_cancellation("op", "not callable")


def test_clear_completed_keeps_running():
    tracker = ProgressTracker()
    tracker.start("running")
    tracker.start("done")
    tracker.complete("done")

    assert tracker.clear_completed() == 1
    assert [s.id for s in tracker.all()] == ["running"]

    tracker.clear_all()
    assert tracker.all() == []


def test_auto_complete_fires_after_reaching_total():
    tracker = ProgressTracker()
    finished = threading.Event()
    tracker.add_listener("complete", lambda op_id, state: finished.set())

    tracker.start("op", total=3, auto_complete=True, auto_complete_delay=0)
    tracker.update("op", progress=3, message="All rows sent")

    assert finished.wait(2)
    assert tracker.get("op").status == "completed"
    assert tracker.get("op").message == "All rows sent"


def test_restart_discards_pending_auto_complete():
    tracker = ProgressTracker()
    completed = []
    tracker.add_listener("complete", lambda op_id, state: completed.append(op_id))

    tracker.start("op", total=2, auto_complete=True, auto_complete_delay=0.2)
    tracker.update("op", progress=2)
    tracker.start("op", total=100)
    tracker.update("op", progress=5)

    time.sleep(0.4)
    assert completed == []
    assert tracker.get("op").status == "running"
    assert tracker.get("op").progress == 5


def test_clearing_discards_pending_auto_complete():
    tracker = ProgressTracker()
    tracker.start("op", total=1, auto_complete=True, auto_complete_delay=0.2)
    tracker.update("op", progress=1)
    tracker.clear_all()
    tracker.start("op", total=10)

    time.sleep(0.4)
    assert tracker.get("op").status == "running"


def test_persistence_survives_restart_and_interrupts_running(tmp_path):
    path = tmp_path / "progress.json"
    tracker = ProgressTracker(path=str(path))
    tracker.start("done", total=4)
    tracker.complete("done")
    tracker.start("inflight", total=4)
    tracker.update("inflight", progress=2)

    restored = ProgressTracker(path=str(path))
    assert restored.get("done").status == "completed"
    inflight = restored.get("inflight")
    assert inflight.status == "failed"
    assert inflight.message == "Interrupted by restart"
    assert inflight.progress == 2


def test_corrupt_persistence_file_is_ignored(tmp_path):
    path = tmp_path / "progress.json"
    path.write_text("{not json")
    tracker = ProgressTracker(path=str(path))
    assert tracker.all() == []

    tracker.start("op")
    assert json.loads(path.read_text())["operations"]["op"]["status"] == "running"
