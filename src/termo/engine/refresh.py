"""Live update engine: one polling actor per attached user.

The polling state lives in a RefreshContext and is advanced by the pure
function `advance`, so the state machine can be driven step by step in
tests. RefreshEngine wraps it in one asyncio task per user and performs the
side effects (screen capture, progress edits, final delivery).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable

from telegram.constants import ParseMode
from telegram.error import TelegramError

from termo.bot.delivery import CODE_FENCE_OVERHEAD, Channel
from termo.config import DeliveryConfig, RefreshConfig
from termo.engine.classifier import Activity, parse_activity
from termo.engine.screen import (
    changed_line_count,
    context_percentage,
    context_warning,
    extract_response,
    response_preview,
    screen_tail,
    strip_chrome,
)
from termo.terminal.registry import SessionRegistry
from termo.terminal.tmux import TmuxBridge
from termo.utils.formatting import format_elapsed, split_for_channel
from termo.utils.system import notify_in_background

logger = logging.getLogger(__name__)

WAITING_TIPS = [
    "💡 Type \"ultrathink\" for deeper thinking",
    "💡 /screen shows the raw terminal",
    "💡 /stop sends Ctrl-C to the assistant",
    "☕ Good things take time...",
    "🧠 Deep thinking in progress...",
    "📱 Phone in hand, world in your code.",
    "🚀 Building something awesome?",
    "✨ The assistant is working hard for you",
]


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Phase(str, enum.Enum):
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


@dataclass
class RefreshContext:
    owner_id: int
    chat_id: int
    session_name: str
    user_text: str = ""
    last_screen: str = ""
    stable_count: int = 0
    start_time: float = 0.0
    last_ui_update: float = 0.0
    last_message_id: int | None = None
    notified_complete: bool = False
    finished: bool = False
    alive: bool = True
    tip_index: int = 0


@dataclass(frozen=True)
class Step:
    phase: Phase
    thinking: bool = False
    progress_due: bool = False
    forced: bool = False


def advance(
    ctx: RefreshContext,
    screen: str,
    activity: Activity,
    now: float,
    settings: RefreshConfig,
) -> Step:
    """Apply one poll result to ctx and say what should happen next."""
    if not ctx.alive or ctx.finished:
        return Step(Phase.STOPPED)

    if now - ctx.start_time > settings.timeout:
        ctx.finished = True
        return Step(Phase.TIMED_OUT)

    unchanged = screen == ctx.last_screen or changed_line_count(ctx.last_screen, screen) < settings.min_change_lines
    ctx.stable_count = ctx.stable_count + 1 if unchanged else 0
    ctx.last_screen = screen

    # Detection can miss; a long-frozen screen is done whatever it looks like.
    forced = ctx.stable_count >= settings.force_done_threshold

    if activity.thinking and not forced:
        progress_due = ctx.last_message_id is not None and now - ctx.last_ui_update >= settings.ui_update_interval
        if progress_due:
            ctx.last_ui_update = now
        return Step(Phase.POLLING, thinking=True, progress_due=progress_due)

    if forced or ctx.stable_count >= settings.stable_threshold:
        ctx.finished = True
        ctx.notified_complete = True
        return Step(Phase.COMPLETED, forced=forced)

    return Step(Phase.POLLING)


class RefreshEngine:
    """Owns the per-user polling tasks."""

    def __init__(
        self,
        bridge: TmuxBridge,
        registry: SessionRegistry,
        settings: RefreshConfig | None = None,
        delivery: DeliveryConfig | None = None,
        notify_after: float | None = 10.0,
        capture_lines: int = 500,
        classify: Callable[[str], Activity] = parse_activity,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bridge = bridge
        self.registry = registry
        self.settings = settings or RefreshConfig()
        self.delivery = delivery or DeliveryConfig()
        self.notify_after = notify_after
        self.capture_lines = capture_lines
        self.classify = classify
        self.clock = clock
        self._contexts: dict[int, RefreshContext] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        registry.on_evict(self.stop)

    # --- Lifecycle ---

    def start(
        self,
        owner_id: int,
        chat_id: int,
        session_name: str,
        channel: Channel,
        initial_screen: str = "",
        message_id: int | None = None,
        user_text: str = "",
    ) -> RefreshContext:
        """Begin polling for a user, cancelling any previous instance first."""
        self.stop(owner_id)
        ctx = RefreshContext(
            owner_id=owner_id,
            chat_id=chat_id,
            session_name=session_name,
            user_text=user_text,
            last_screen=initial_screen,
            start_time=self.clock(),
            last_message_id=message_id,
        )
        self._contexts[owner_id] = ctx
        self._tasks[owner_id] = asyncio.create_task(self._run(ctx, channel), name=f"refresh-{owner_id}")
        logger.debug("Auto-refresh started for user %s on %s", owner_id, session_name)
        return ctx

    def stop(self, owner_id: int) -> bool:
        """Cancel the user's polling instance. Safe to call repeatedly."""
        ctx = self._contexts.pop(owner_id, None)
        task = self._tasks.pop(owner_id, None)
        if ctx is not None:
            ctx.alive = False
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        return ctx is not None

    def is_active(self, owner_id: int) -> bool:
        return owner_id in self._contexts

    def context(self, owner_id: int) -> RefreshContext | None:
        return self._contexts.get(owner_id)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for owner_id in list(self._contexts):
            self.stop(owner_id)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _release(self, ctx: RefreshContext) -> None:
        ctx.alive = False
        if self._contexts.get(ctx.owner_id) is ctx:
            del self._contexts[ctx.owner_id]
            self._tasks.pop(ctx.owner_id, None)

    # --- Polling ---

    async def _run(self, ctx: RefreshContext, channel: Channel) -> None:
        try:
            while ctx.alive and not ctx.finished:
                await asyncio.sleep(self.settings.poll_interval)
                await self.poll_once(ctx, channel)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Heuristic detection makes retrying unsafe; end this user's loop.
            logger.exception("Auto-refresh failed for user %s", ctx.owner_id)
        finally:
            self._release(ctx)

    async def poll_once(self, ctx: RefreshContext, channel: Channel) -> Phase:
        """Run a single poll cycle and its side effects."""
        if not ctx.alive or ctx.finished:
            return Phase.STOPPED
        if self.registry.current_session(ctx.owner_id) != ctx.session_name:
            ctx.alive = False
            return Phase.STOPPED

        screen = await self.bridge.capture_pane(ctx.session_name, self.capture_lines)
        if not ctx.alive:
            return Phase.STOPPED

        step = advance(ctx, screen, self.classify(screen), self.clock(), self.settings)
        if step.phase is Phase.TIMED_OUT:
            await self._timed_out(ctx, channel)
        elif step.phase is Phase.COMPLETED:
            await self._complete(ctx, channel)
        elif step.thinking:
            await channel.typing()
            if step.progress_due and ctx.alive:
                await self._progress(ctx, channel, screen)
        return step.phase

    async def _progress(self, ctx: RefreshContext, channel: Channel, screen: str) -> None:
        if ctx.last_message_id is None:
            return
        elapsed = format_elapsed(self.clock() - ctx.start_time)
        preview = response_preview(screen, ctx.user_text, limit=self.settings.preview_chars)
        header = f"🧠 *Assistant is writing...* ({elapsed})"
        if preview:
            text = f"{header}\n\n```\n{preview.replace('```', '`')}\n```\n_...writing..._"
            plain = f"🧠 Assistant is writing... ({elapsed})\n\n{preview}"
        else:
            tip = WAITING_TIPS[ctx.tip_index % len(WAITING_TIPS)]
            ctx.tip_index += 1
            text = f"{header}\n\n{tip}"
            plain = f"🧠 Assistant is writing... ({elapsed})\n\n{tip}"
        await channel.edit_safe(ctx.last_message_id, text, parse_mode=ParseMode.MARKDOWN, plain_text=plain)

    async def _complete(self, ctx: RefreshContext, channel: Channel) -> None:
        final = await self.bridge.capture_pane(ctx.session_name, self.capture_lines)
        if not ctx.alive:
            return
        screen = final or ctx.last_screen
        self.registry.set_last_screen(ctx.owner_id, screen)

        elapsed = self.clock() - ctx.start_time
        if self.notify_after is not None and elapsed >= self.notify_after:
            notify_in_background("Termo", f"Assistant finished ({int(elapsed)}s)")

        warning = context_warning(context_percentage(screen))
        suffix = f"\n\n{warning}" if warning else ""
        content = strip_chrome(extract_response(screen, ctx.user_text)) or "(empty)"
        chunks = split_for_channel(content, self.delivery.max_message - CODE_FENCE_OVERHEAD - len(suffix))

        if len(chunks) == 1 and ctx.last_message_id is not None:
            try:
                await channel.edit(
                    ctx.last_message_id,
                    f"✅ *Done!*\n\n```\n{chunks[0]}\n```{suffix}",
                    parse_mode=ParseMode.MARKDOWN,
                )
                return
            except TelegramError:
                logger.debug("Final edit failed for user %s, sending instead", ctx.owner_id)

        if ctx.last_message_id is not None:
            await channel.delete(ctx.last_message_id)
        if not ctx.alive:
            return
        await channel.send_safe(f"✅ *Done!*{suffix}", parse_mode=ParseMode.MARKDOWN)
        await channel.send_safe(content, parse_mode=ParseMode.MARKDOWN, code_block=True)

    async def _timed_out(self, ctx: RefreshContext, channel: Channel) -> None:
        screen = await self.bridge.capture_pane(ctx.session_name, self.capture_lines)
        if not ctx.alive:
            return
        minutes = int(self.settings.timeout // 60)
        await channel.send_safe(
            f"⏰ *Auto-refresh stopped* ({minutes} min timeout)\n\n```\n{screen_tail(screen) or '(empty)'}\n```",
            parse_mode=ParseMode.MARKDOWN,
        )
