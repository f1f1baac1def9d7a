"""Tests for the live update engine."""

from __future__ import annotations

import asyncio

import pytest
from telegram.error import TelegramError

from termo.config import RefreshConfig
from termo.engine.classifier import Activity, ActivityState
from termo.engine.refresh import Phase, RefreshContext, RefreshEngine, advance
from termo.terminal.registry import SessionRegistry

THINKING = Activity(thinking=True, ready=False, done=False, status=ActivityState.THINKING)
READY = Activity(thinking=False, ready=True, done=False, status=ActivityState.READY)

SETTINGS = RefreshConfig(
    poll_interval=3.0,
    ui_update_interval=8.0,
    timeout=600.0,
    stable_threshold=5,
    force_done_threshold=8,
    min_change_lines=2,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _ctx(**kwargs) -> RefreshContext:
    defaults = dict(owner_id=1, chat_id=1, session_name="main", start_time=1000.0)
    defaults.update(kwargs)
    return RefreshContext(**defaults)


def _done_messages(channel) -> list[str]:
    return [text for text in channel.everything() if "Done" in text]


class TestAdvance:
    def test_changing_screen_resets_stability(self):
        ctx = _ctx(last_screen="a")
        step = advance(ctx, "a\nb\nc", READY, 1003.0, SETTINGS)
        assert step.phase is Phase.POLLING
        assert ctx.stable_count == 0
        assert ctx.last_screen == "a\nb\nc"

    def test_small_change_counts_as_stable(self):
        ctx = _ctx(last_screen="a\nb")
        advance(ctx, "a\nX", READY, 1003.0, SETTINGS)
        assert ctx.stable_count == 1

    def test_completes_at_threshold(self):
        ctx = _ctx(last_screen="same")
        phases = [advance(ctx, "same", READY, 1000.0 + 3 * i, SETTINGS).phase for i in range(1, 6)]
        assert phases == [Phase.POLLING] * 4 + [Phase.COMPLETED]
        assert ctx.finished
        assert ctx.notified_complete

    def test_thinking_blocks_normal_completion(self):
        ctx = _ctx(last_screen="same")
        for i in range(1, 8):
            step = advance(ctx, "same", THINKING, 1000.0 + 3 * i, SETTINGS)
            assert step.phase is Phase.POLLING
            assert step.thinking

    def test_frozen_screen_forces_completion(self):
        ctx = _ctx(last_screen="same")
        steps = [advance(ctx, "same", THINKING, 1000.0 + 3 * i, SETTINGS) for i in range(1, 9)]
        assert steps[-1].phase is Phase.COMPLETED
        assert steps[-1].forced
        assert all(s.phase is Phase.POLLING for s in steps[:-1])

    def test_progress_throttled(self):
        ctx = _ctx(last_message_id=10)
        first = advance(ctx, "1", THINKING, 1010.0, SETTINGS)
        second = advance(ctx, "1\n2\n3", THINKING, 1013.0, SETTINGS)
        third = advance(ctx, "1\n2\n3\n4\n5", THINKING, 1019.0, SETTINGS)
        assert [first.progress_due, second.progress_due, third.progress_due] == [True, False, True]

    def test_no_progress_without_message(self):
        ctx = _ctx()
        assert not advance(ctx, "x", THINKING, 1010.0, SETTINGS).progress_due

    def test_timeout(self):
        ctx = _ctx()
        step = advance(ctx, "x", THINKING, 1000.0 + 601, SETTINGS)
        assert step.phase is Phase.TIMED_OUT
        assert ctx.finished

    def test_finished_or_dead_context_stops(self):
        assert advance(_ctx(finished=True), "x", READY, 1003.0, SETTINGS).phase is Phase.STOPPED
        assert advance(_ctx(alive=False), "x", READY, 1003.0, SETTINGS).phase is Phase.STOPPED


@pytest.fixture
def registry():
    registry = SessionRegistry()
    registry.attach(1, "main")
    return registry


def _engine(bridge, registry, clock=None, settings=SETTINGS) -> RefreshEngine:
    return RefreshEngine(bridge, registry, settings=settings, notify_after=None, clock=clock or FakeClock())


class TestScenario:
    @pytest.mark.asyncio
    async def test_build_the_project(self, make_bridge, registry, fake_channel):
        working = [f"> build the project\n◐ Building step {i}\n" + "\n".join(["x"] * i) for i in range(7)]
        final = "> build the project\nBuild finished: 3 targets\n\n>"
        bridge = make_bridge(working + [final])
        clock = FakeClock()
        engine = _engine(bridge, registry, clock)
        ctx = RefreshContext(
            owner_id=1,
            chat_id=1,
            session_name="main",
            user_text="build the project",
            start_time=clock(),
            last_message_id=10,
        )

        phases = []
        for _ in range(30):
            clock.now += 3
            phases.append(await engine.poll_once(ctx, fake_channel))

        assert phases.count(Phase.COMPLETED) == 1
        done = _done_messages(fake_channel)
        assert len(done) == 1
        assert "Build finished: 3 targets" in done[0]
        assert "build the project" not in done[0]
        assert fake_channel.typing_count > 0
        assert registry.last_screen(1) == final

    @pytest.mark.asyncio
    async def test_multi_chunk_reply_replaces_status_message(self, make_bridge, registry, fake_channel):
        body = "\n".join(f"result line {i}" for i in range(600))
        bridge = make_bridge([f"> go\n{body}\n>"])
        engine = _engine(bridge, registry)
        ctx = _ctx(user_text="go", last_message_id=10)
        ctx.last_screen = f"> go\n{body}\n>"
        for _ in range(5):
            await engine.poll_once(ctx, fake_channel)

        assert fake_channel.deleted == [10]
        assert len(_done_messages(fake_channel)) == 1
        assert any("result line 599" in text for text in fake_channel.sent)

    @pytest.mark.asyncio
    async def test_failed_final_edit_falls_back_to_send(self, make_bridge, registry, fake_channel):
        async def broken_edit(*args, **kwargs):
            raise TelegramError("message to edit not found")

        fake_channel.edit = broken_edit
        bridge = make_bridge(["> hi\nhello there\n>"])
        engine = _engine(bridge, registry)
        ctx = _ctx(user_text="hi", last_message_id=10, last_screen="> hi\nhello there\n>")
        for _ in range(5):
            await engine.poll_once(ctx, fake_channel)

        assert len(_done_messages(fake_channel)) == 1
        assert "hello there" in fake_channel.sent[-1]

    @pytest.mark.asyncio
    async def test_timeout_reports_screen_tail(self, make_bridge, registry, fake_channel):
        bridge = make_bridge(["◐ still going"])
        clock = FakeClock()
        engine = _engine(bridge, registry, clock)
        ctx = _ctx(start_time=clock())
        clock.now += 601
        assert await engine.poll_once(ctx, fake_channel) is Phase.TIMED_OUT
        assert "Auto-refresh stopped" in fake_channel.sent[0]
        assert "still going" in fake_channel.sent[0]

    @pytest.mark.asyncio
    async def test_detached_session_stops_polling(self, make_bridge, registry, fake_channel):
        bridge = make_bridge(["screen"])
        engine = _engine(bridge, registry)
        ctx = _ctx()
        registry.detach(1)
        assert await engine.poll_once(ctx, fake_channel) is Phase.STOPPED
        assert not ctx.alive
        assert bridge.captures == 0


class TestEngineTasks:
    @pytest.mark.asyncio
    async def test_runs_to_single_completion(self, make_bridge, registry, fake_channel, app_config):
        bridge = make_bridge(["> hi\nanswer\n>"])
        engine = RefreshEngine(bridge, registry, settings=app_config.refresh, notify_after=None)
        engine.start(1, 1, "main", fake_channel, initial_screen="> hi\nanswer\n>", message_id=10, user_text="hi")
        task = engine._tasks[1]
        await asyncio.wait_for(task, timeout=5)

        assert not engine.is_active(1)
        assert len(_done_messages(fake_channel)) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_bridge, registry, fake_channel, app_config):
        bridge = make_bridge(["◐ working"])
        engine = RefreshEngine(bridge, registry, settings=app_config.refresh, notify_after=None)
        ctx = engine.start(1, 1, "main", fake_channel, message_id=10)
        task = engine._tasks[1]

        assert engine.stop(1)
        assert not engine.stop(1)
        with pytest.raises(asyncio.CancelledError):
            await task

        sent_before = list(fake_channel.everything())
        assert await engine.poll_once(ctx, fake_channel) is Phase.STOPPED
        assert fake_channel.everything() == sent_before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stop_at_capture", [1, 2])
    async def test_stop_during_capture_suppresses_output(self, make_bridge, registry, fake_channel, stop_at_capture):
        done_screen = "> hi\nanswer\n>"
        bridge = make_bridge([done_screen])
        engine = _engine(bridge, registry)
        capture = bridge.capture_pane

        async def capture_then_stop(name, max_lines=500):
            screen = await capture(name, max_lines)
            if bridge.captures == stop_at_capture:
                engine.stop(1)
            return screen

        bridge.capture_pane = capture_then_stop
        ctx = engine.start(1, 1, "main", fake_channel, initial_screen=done_screen, message_id=10, user_text="hi")
        ctx.stable_count = SETTINGS.stable_threshold - 1
        task = engine._tasks[1]

        phase = await engine.poll_once(ctx, fake_channel)

        if stop_at_capture == 1:
            # Stopped while the poll's own capture was in flight.
            assert phase is Phase.STOPPED
            assert not ctx.finished
        else:
            # Stopped during the final capture that precedes delivery.
            assert phase is Phase.COMPLETED
        assert fake_channel.everything() == []
        assert fake_channel.deleted == []
        assert not engine.is_active(1)
        await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_restart_replaces_previous_instance(self, make_bridge, registry, fake_channel, app_config):
        bridge = make_bridge(["◐ working"])
        engine = RefreshEngine(bridge, registry, settings=app_config.refresh, notify_after=None)
        first = engine.start(1, 1, "main", fake_channel)
        second = engine.start(1, 1, "main", fake_channel)
        assert not first.alive
        assert engine.context(1) is second
        await engine.shutdown()
        assert not engine.is_active(1)

    @pytest.mark.asyncio
    async def test_eviction_stops_polling(self, make_bridge, registry, fake_channel, app_config):
        bridge = make_bridge(["◐ working"])
        engine = RefreshEngine(bridge, registry, settings=app_config.refresh, notify_after=None)
        ctx = engine.start(1, 1, "main", fake_channel)
        registry.forget(1)
        assert not ctx.alive
        assert not engine.is_active(1)
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_progress_without_status_message_is_skipped(make_bridge, registry, fake_channel):
    engine = _engine(make_bridge(["◐ working"]), registry)
    await engine._progress(_ctx(), fake_channel, "◐ working")
    assert fake_channel.edits == []
