from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path

from buddy_replies.notify import FakeChangeSource
from buddy_replies.replies import ReplyWatcher, RetryScheduler, WatchState
from buddy_replies.transcripts import TranscriptStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


USER = {
    "type": "user",
    "uuid": "u1",
    "timestamp": "2025-11-06T10:00:00Z",
    "message": {"role": "user", "content": "fix the bug in parser.ts"},
}
TOOL = {
    "type": "assistant",
    "uuid": "a1",
    "parentUuid": "u1",
    "timestamp": "2025-11-06T10:00:03Z",
    "message": {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "Edit", "input": {}}]},
}
REPLY = {
    "type": "assistant",
    "uuid": "a2",
    "parentUuid": "a1",
    "timestamp": "2025-11-06T10:00:09Z",
    "message": {"role": "assistant", "content": [{"type": "text", "text": "Fixed!"}]},
}


def _write(path: Path, *records: dict) -> None:
    path.write_text("".join(json.dumps(record) + "\n" for record in records), encoding="utf-8")


def _watcher(clock, source=None, **kwargs) -> tuple[ReplyWatcher, FakeChangeSource]:
    source = source or FakeChangeSource()
    store = TranscriptStore(clock=clock)
    return ReplyWatcher(store, source, clock=clock, **kwargs), source


def test_file_change_delivers_reply(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)

    async def scenario():
        watcher, source = _watcher(FakeClock())
        received = []
        done = asyncio.Event()

        def callback(prompt_id, reply):
            received.append((prompt_id, reply))
            done.set()

        assert watcher.register("p1", transcript, prompt_text="fix the bug in parser.ts", callback=callback)
        assert source.active_paths == [transcript]
        assert await watcher.check_transcript(transcript) == 0
        assert watcher.get("p1").matched_user_entry_id == "u1"

        _write(transcript, USER, TOOL, REPLY)
        assert source.emit(transcript) == 1
        await asyncio.wait_for(done.wait(), timeout=2)

        pending_after = len(watcher)
        active_after = source.active_paths
        watcher.dispose()
        return received, pending_after, active_after

    received, pending_after, active_after = asyncio.run(scenario())

    assert [(prompt_id, reply.text, reply.source_entry_id) for prompt_id, reply in received] == [
        ("p1", "Fixed!", "a2")
    ]
    assert pending_after == 0
    assert active_after == []


def test_duplicate_notifications_deliver_once(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)

    async def scenario():
        watcher, source = _watcher(FakeClock())
        received = []
        done = asyncio.Event()

        def callback(prompt_id, reply):
            received.append(prompt_id)
            done.set()

        watcher.register("p1", transcript, prompt_text="fix the bug", callback=callback, matched_user_entry_id="u1")
        _write(transcript, USER, TOOL, REPLY)
        source.emit(transcript)
        source.emit(transcript)
        await asyncio.wait_for(done.wait(), timeout=2)
        assert await watcher.check_transcript(transcript) == 0
        watcher.dispose()
        return received

    assert asyncio.run(scenario()) == ["p1"]


def test_backoff_doubles_until_exhausted(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)
    clock = FakeClock()

    async def scenario():
        watcher, source = _watcher(clock, max_attempts=8)
        received = []
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda *args: received.append(args))
        watch = watcher.get("p1")
        intervals = []
        still_pending = []
        for _ in range(8):
            clock.advance(watch.backoff_interval)
            await watcher.retry_due()
            intervals.append(watch.backoff_interval)
            still_pending.append("p1" in watcher)
        active = source.active_paths
        watcher.dispose()
        return watch, intervals, still_pending, received, active

    watch, intervals, still_pending, received, active = asyncio.run(scenario())

    assert intervals == [2, 4, 8, 16, 32, 60, 60, 60]
    assert still_pending == [True] * 7 + [False]
    assert watch.attempts == 8
    assert watch.state is WatchState.EXHAUSTED
    assert received == []
    assert active == []


def test_retry_waits_for_backoff(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)
    clock = FakeClock()

    async def scenario():
        watcher, _ = _watcher(clock)
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        clock.advance(0.5)
        await watcher.retry_due()
        watch = watcher.get("p1")
        watcher.dispose()
        return watch

    watch = asyncio.run(scenario())

    assert watch.attempts == 0
    assert watch.state is WatchState.PENDING


def test_timer_reschedules_for_earliest_due_watch(tmp_path: Path) -> None:
    first = tmp_path / "first.jsonl"
    second = tmp_path / "second.jsonl"
    _write(first, USER)
    _write(second, USER)
    clock = FakeClock(0.0)

    async def scenario():
        watcher, _ = _watcher(clock)
        watcher.register("p1", first, prompt_text="fix the bug", callback=lambda *args: None)
        armed_first = watcher.scheduler.due_at
        clock.advance(1.0)
        await watcher.retry_due()
        armed_after_retry = watcher.scheduler.due_at
        watcher.register("p2", second, prompt_text="fix the bug", callback=lambda *args: None)
        armed_after_register = watcher.scheduler.due_at
        watcher.dispose()
        return armed_first, armed_after_retry, armed_after_register, watcher.scheduler.active

    assert asyncio.run(scenario()) == (1.0, 3.0, 2.0, False)


def test_sweep_drops_stale_and_exhausted_watches(tmp_path: Path) -> None:
    stale = tmp_path / "stale.jsonl"
    fresh = tmp_path / "fresh.jsonl"
    spent = tmp_path / "spent.jsonl"
    for path in (stale, fresh, spent):
        _write(path, USER)
    clock = FakeClock()

    async def scenario():
        watcher, source = _watcher(clock)
        watcher.register("stale", stale, prompt_text="fix the bug", callback=lambda *args: None)
        clock.advance(301.0)
        watcher.register("fresh", fresh, prompt_text="fix the bug", callback=lambda *args: None)
        watcher.register("spent", spent, prompt_text="fix the bug", callback=lambda *args: None)
        spent_watch = watcher.get("spent")
        spent_watch.attempts = spent_watch.max_attempts
        stale_watch = watcher.get("stale")

        removed = watcher.sweep()
        result = (removed, sorted(watch for watch in ("stale", "fresh", "spent") if watch in watcher), source.active_paths)
        watcher.dispose()
        return result, stale_watch.state

    (removed, remaining, active), stale_state = asyncio.run(scenario())

    assert removed == 2
    assert remaining == ["fresh"]
    assert active == [fresh]
    assert stale_state is WatchState.STALE


def test_shared_subscription_outlives_first_resolution(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    second_user = {
        "type": "user",
        "uuid": "u2",
        "timestamp": "2025-11-06T10:05:00Z",
        "message": {"role": "user", "content": "now add a test"},
    }
    _write(transcript, USER, second_user)

    async def scenario():
        watcher, source = _watcher(FakeClock())
        received = []
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda pid, r: received.append(pid), matched_user_entry_id="u1")
        watcher.register("p2", transcript, prompt_text="now add a test", callback=lambda pid, r: received.append(pid), matched_user_entry_id="u2")
        _write(transcript, USER, second_user, TOOL, REPLY)
        await watcher.check_transcript(transcript)
        after_first = (list(received), source.active_paths, source.close_count)

        answer = {
            "type": "assistant",
            "uuid": "a3",
            "parentUuid": "u2",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Test added"}]},
        }
        _write(transcript, USER, second_user, TOOL, REPLY, answer)
        await watcher.check_transcript(transcript)
        after_second = (list(received), source.active_paths, source.close_count)
        watcher.dispose()
        return after_first, after_second

    after_first, after_second = asyncio.run(scenario())

    assert after_first == (["p1"], [transcript], 0)
    assert after_second == (["p1", "p2"], [], 1)


def test_subscription_failure_falls_back_to_timer(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)
    clock = FakeClock()

    async def scenario():
        source = FakeChangeSource(failing_paths={transcript})
        watcher, _ = _watcher(clock, source)
        received = []
        registered = watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda pid, r: received.append(r.text))
        watched = watcher.watched_paths
        _write(transcript, USER, TOOL, REPLY)
        clock.advance(1.0)
        delivered = await watcher.retry_due()
        watcher.dispose()
        return registered, watched, delivered, received

    assert asyncio.run(scenario()) == (True, [], 1, ["Fixed!"])


def test_missing_transcript_is_matched_once_it_appears(tmp_path: Path) -> None:
    transcript = tmp_path / "later.jsonl"

    async def scenario():
        watcher, _ = _watcher(FakeClock())
        received = []
        watcher.register("p1", transcript, prompt_text="fix the bug in parser.ts", callback=lambda pid, r: received.append(r.text))
        first = await watcher.check_transcript(transcript)
        _write(transcript, USER, TOOL, REPLY)
        second = await watcher.check_transcript(transcript)
        watcher.dispose()
        return first, second, received

    assert asyncio.run(scenario()) == (0, 1, ["Fixed!"])


def test_failing_callback_still_removes_watch(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER, TOOL, REPLY)

    def explode(prompt_id, reply):
        raise RuntimeError("panel closed")

    async def scenario():
        watcher, _ = _watcher(FakeClock())
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=explode, matched_user_entry_id="u1")
        delivered = await watcher.check_transcript(transcript)
        remaining = len(watcher)
        watcher.dispose()
        return delivered, remaining

    assert asyncio.run(scenario()) == (1, 0)


def test_dispose_is_idempotent_and_blocks_registration(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)

    async def scenario():
        watcher, source = _watcher(FakeClock())
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        watcher.register("p2", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        duplicate = watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        watcher.dispose()
        watcher.dispose()
        after = watcher.register("p3", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        return duplicate, after, len(watcher), source.active_paths, watcher.scheduler.active, watcher.status()

    duplicate, after, pending, active, timer_active, status = asyncio.run(scenario())

    assert duplicate is False
    assert after is False
    assert pending == 0
    assert active == []
    assert timer_active is False
    assert status["pending_count"] == 0
    assert status["next_retry_at"] is None


def test_real_timer_drives_retries(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER, TOOL, REPLY)

    async def scenario():
        store = TranscriptStore()
        watcher = ReplyWatcher(store, FakeChangeSource(), initial_backoff=0.01)
        done = asyncio.Event()
        received = []

        def callback(prompt_id, reply):
            received.append(reply.text)
            done.set()

        watcher.register("p1", transcript, prompt_text="fix the bug", callback=callback, matched_user_entry_id="u1")
        await asyncio.wait_for(done.wait(), timeout=2)
        watcher.dispose()
        return received

    assert asyncio.run(scenario()) == ["Fixed!"]


def test_scheduler_keeps_single_handle() -> None:
    fired = []

    async def scenario():
        scheduler = RetryScheduler(lambda: fired.append("tick"))
        loop = asyncio.get_running_loop()
        scheduler.schedule(loop.time() + 60)
        scheduler.schedule(None)
        inactive = scheduler.active
        scheduler.schedule(0.0)
        await asyncio.sleep(0.01)
        return inactive, scheduler.active

    inactive, still_active = asyncio.run(scenario())

    assert inactive is False
    assert still_active is False
    assert fired == ["tick"]


def test_final_retry_waits_for_running_check(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER, TOOL, REPLY)
    clock = FakeClock()
    gate = threading.Event()

    def slow_reader(path: Path) -> str:
        gate.wait(2)
        return path.read_text(encoding="utf-8")

    async def scenario():
        store = TranscriptStore(reader=slow_reader, clock=clock)
        watcher = ReplyWatcher(store, FakeChangeSource(), max_attempts=1, clock=clock)
        received = []
        watcher.register("p1", transcript, prompt_text="fix the bug", callback=lambda pid, r: received.append(r.text), matched_user_entry_id="u1")
        watch = watcher.get("p1")

        running = asyncio.create_task(watcher.check_transcript(transcript))
        await asyncio.sleep(0.01)
        clock.advance(1.0)
        final_retry = asyncio.create_task(watcher.retry_due())
        await asyncio.sleep(0.01)
        gate.set()
        await asyncio.wait_for(asyncio.gather(running, final_retry), timeout=2)
        watcher.dispose()
        return received, watch.state, watcher.is_retired("p1")

    received, state, retired = asyncio.run(scenario())

    assert received == ["Fixed!"]
    assert state is WatchState.RESOLVED
    assert not retired


def test_stale_and_exhausted_prompts_cannot_be_registered_again(tmp_path: Path) -> None:
    transcript = tmp_path / "session.jsonl"
    _write(transcript, USER)
    clock = FakeClock()

    async def scenario():
        watcher, _ = _watcher(clock, max_attempts=1)
        watcher.register("stale", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        clock.advance(301.0)
        watcher.sweep()
        watcher.register("spent", transcript, prompt_text="fix the bug", callback=lambda *args: None)
        clock.advance(1.0)
        await watcher.retry_due()
        again = [
            watcher.register(prompt_id, transcript, prompt_text="fix the bug", callback=lambda *args: None)
            for prompt_id in ("stale", "spent")
        ]
        status = watcher.status()
        watcher.dispose()
        return again, status

    again, status = asyncio.run(scenario())

    assert again == [False, False]
    assert status["pending_count"] == 0
    assert status["retired_count"] == 2
