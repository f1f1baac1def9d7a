"""Telegram bot command handlers."""

from __future__ import annotations

import asyncio
import logging
import shlex

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import ContextTypes

from termo.bot.delivery import Channel
from termo.bot.security import user_id_required
from termo.bot.services import get_services
from termo.engine.classifier import parse_activity
from termo.engine.screen import screen_tail, strip_ansi
from termo.errors import InputRejected
from termo.storage.database import get_recent_commands, save_command
from termo.terminal.sessions import DEFAULT_SESSION
from termo.terminal.sanitizer import interactive_warning, is_valid_session_name, validate_command, validate_path
from termo.utils.formatting import format_duration, format_shell_result, shorten_path

logger = logging.getLogger(__name__)

ECHO_SETTLE_SECONDS = 0.5


def _ids(update: Update) -> tuple[int, int]:
    """(user id, chat id); also marks the user active for the idle sweep."""
    user_id = update.effective_user.id  # type: ignore[union-attr]
    get_services().registry.touch(user_id)
    return user_id, update.effective_chat.id  # type: ignore[union-attr]


def _channel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Channel:
    return Channel(context.bot, update.effective_chat.id, get_services().config.delivery)  # type: ignore[union-attr]


# --- Handlers ---


@user_id_required
async def start_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command."""
    from termo import __version__

    await update.message.reply_text(  # type: ignore[union-attr]
        f"Termo v{__version__}\n\n"
        "Drive your AI assistant's tmux session from Telegram.\n\n"
        "/attach to enter assistant mode, or send any shell command.\n"
        "Use /help to see all commands."
    )


@user_id_required
async def help_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help command."""
    services = get_services()
    user_id, _ = _ids(update)
    attached = services.registry.current_session(user_id)
    mode = f"assistant ({attached})" if attached else f"shell ({services.registry.active_shell_session(user_id)})"

    await update.message.reply_text(  # type: ignore[union-attr]
        f"Termo\n"
        f"{'=' * 30}\n"
        f"Mode: {mode}\n"
        f"{'=' * 30}\n\n"
        "Assistant mode:\n"
        "  /attach [name]   - Attach to a tmux session\n"
        "  /detach          - Back to shell mode\n"
        "  /stop            - Send Ctrl-C, stop live updates\n"
        "  /screen          - Show the current screen\n"
        "  /tmux [list|new|kill|rename] - Manage tmux sessions\n\n"
        "Shell mode:\n"
        "  /sh <cmd>        - Run a command\n"
        "  /cd <path>       - Change directory\n"
        "  /session [name]  - Switch shell session (/session close <name>)\n"
        "  /abort           - Abort the running command\n"
        "  /confirm /cancel - Answer a confirmation\n"
        "  /history         - Recent commands\n\n"
        "Plain text goes to the assistant when attached, to the shell otherwise."
    )


@user_id_required
async def attach_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /attach [name] command."""
    services = get_services()
    user_id, _ = _ids(update)
    requested = context.args[0] if context.args else None

    current = services.registry.current_session(user_id)
    if current and not requested:
        await update.message.reply_text(  # type: ignore[union-attr]
            f"Already attached to {current}.\nUse /detach first, or /attach <name> to switch."
        )
        return

    if requested and not is_valid_session_name(requested):
        await update.message.reply_text("Session names may only use letters, digits, - and _ (max 50).")  # type: ignore[union-attr]
        return

    sessions = await services.bridge.list_sessions()
    if not requested and len(sessions) > 1:
        listing = "\n".join(f"{'🟢' if s.attached else '⚪'} {s.name} ({s.window_count} windows)" for s in sessions)
        await update.message.reply_text(f"Select a tmux session with /attach <name>:\n\n{listing}")  # type: ignore[union-attr]
        return

    name = requested or (sessions[0].name if sessions else services.config.tmux.default_session)
    if not await services.bridge.has_session(name):
        await update.message.reply_text(f"Creating tmux session {name}...")  # type: ignore[union-attr]
        if not await services.bridge.create_session(name):
            await update.message.reply_text(f"Failed to create tmux session {name}.")  # type: ignore[union-attr]
            return

    services.engine.stop(user_id)
    services.registry.attach(user_id, name)
    await services.bridge.clear_scrollback(name)
    screen = await services.bridge.capture_pane(name, services.config.tmux.capture_lines)
    services.registry.set_last_screen(user_id, screen)
    cwd = await services.bridge.get_working_directory(name)

    header = f"🟢 *Assistant mode* (`{name}`)\n" + (f"📁 {shorten_path(cwd)}\n" if cwd else "")
    await _channel(update, context).send_safe(
        f"{header}\n```\n{screen_tail(screen) or '(empty)'}\n```", parse_mode=ParseMode.MARKDOWN
    )


@user_id_required
async def detach_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /detach command."""
    services = get_services()
    user_id, _ = _ids(update)
    services.engine.stop(user_id)
    name = services.registry.detach(user_id)
    if name is None:
        await update.message.reply_text("Not attached. Use /attach to enter assistant mode.")  # type: ignore[union-attr]
        return
    await update.message.reply_text(  # type: ignore[union-attr]
        f"👋 Detached from {name}.\nBack to shell mode - commands run and return results."
    )


@user_id_required
async def stop_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stop: interrupt the assistant (or the running shell command)."""
    services = get_services()
    user_id, _ = _ids(update)
    name = services.registry.current_session(user_id)
    if name is None:
        await abort_handler.__wrapped__(update, context)  # type: ignore[attr-defined]
        return
    services.engine.stop(user_id)
    await services.bridge.send_interrupt(name)
    await update.message.reply_text(f"⛔ Sent Ctrl-C to {name}.")  # type: ignore[union-attr]


@user_id_required
async def screen_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /screen: show the attached session's screen and its activity."""
    services = get_services()
    user_id, _ = _ids(update)
    name = services.registry.current_session(user_id)
    if name is None:
        await update.message.reply_text("Not attached. Use /attach first.")  # type: ignore[union-attr]
        return
    screen = await services.bridge.capture_pane(name, services.config.tmux.capture_lines)
    services.registry.set_last_screen(user_id, screen)
    status = parse_activity(screen).status.value
    await _channel(update, context).send_safe(
        f"📺 `{name}` ({status})\n\n```\n{screen_tail(screen) or '(empty)'}\n```", parse_mode=ParseMode.MARKDOWN
    )


@user_id_required
async def tmux_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /tmux [list|new|kill|rename] command."""
    services = get_services()
    bridge = services.bridge
    user_id, _ = _ids(update)
    args = context.args or []
    sub = args[0].lower() if args else "list"

    if sub in ("list", "ls"):
        sessions = await bridge.list_sessions()
        if not sessions:
            await update.message.reply_text("No tmux sessions. Use /attach or /tmux new <name>.")  # type: ignore[union-attr]
            return
        current = services.registry.current_session(user_id)
        lines = ["tmux sessions:\n"]
        for s in sessions:
            marker = " <- you" if s.name == current else ""
            icon = "📺" if s.name == current else ("🟢" if s.attached else "⚪")
            lines.append(f"{icon} {s.name} ({s.window_count} windows){marker}")
        await update.message.reply_text("\n".join(lines))  # type: ignore[union-attr]
        return

    if sub == "new" and len(args) == 2:
        ok = await bridge.create_session(args[1])
        await update.message.reply_text(f"Created {args[1]}." if ok else f"Could not create {args[1]}.")  # type: ignore[union-attr]
        return

    if sub == "kill" and len(args) == 2:
        name = args[1]
        if services.registry.current_session(user_id) == name:
            services.engine.stop(user_id)
            services.registry.detach(user_id)
        ok = await bridge.kill_session(name)
        await update.message.reply_text(f"Killed {name}." if ok else f"Could not kill {name}.")  # type: ignore[union-attr]
        return

    if sub == "rename" and len(args) == 3:
        old, new = args[1], args[2]
        ok = await bridge.rename_session(old, new)
        if ok and services.registry.current_session(user_id) == old:
            services.engine.stop(user_id)
            services.registry.attach(user_id, new)
        await update.message.reply_text(f"Renamed {old} to {new}." if ok else f"Could not rename {old}.")  # type: ignore[union-attr]
        return

    await update.message.reply_text("Usage: /tmux [list | new <name> | kill <name> | rename <old> <new>]")  # type: ignore[union-attr]


@user_id_required
async def shell_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /sh <cmd> command: always runs in the shell, even when attached."""
    if not context.args:
        await update.message.reply_text("Usage: /sh <command>")  # type: ignore[union-attr]
        return
    raw = update.message.text  # type: ignore[union-attr]
    command = raw.split(None, 1)[1] if raw and len(raw.split(None, 1)) > 1 else " ".join(context.args)
    await _execute_command(update, context, command)


@user_id_required
async def cd_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cd <path> command."""
    if not context.args:
        await update.message.reply_text("Usage: /cd <path>")  # type: ignore[union-attr]
        return
    try:
        target = validate_path(" ".join(context.args))
    except InputRejected as e:
        await update.message.reply_text(f"Rejected: {e}")  # type: ignore[union-attr]
        return
    await _execute_command(update, context, f"cd {shlex.quote(str(target))}", skip_validation=True)


@user_id_required
async def session_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /session [name]: list or switch shell sessions."""
    services = get_services()
    user_id, _ = _ids(update)

    if not context.args:
        active = services.registry.active_shell_session(user_id)
        current = await services.sessions.get_or_create(user_id, active)
        lines = [f"Active: {current.name} ({shorten_path(current.working_directory)})"]
        others = [s for s in await services.sessions.list(user_id) if s.name != current.name]
        lines.extend(f"  {s.name} ({shorten_path(s.working_directory)})" for s in others)
        await update.message.reply_text("\n".join(lines))  # type: ignore[union-attr]
        return

    if context.args[0] == "close" and len(context.args) == 2:
        name = context.args[1]
        session = await services.sessions.get(user_id, name)
        if session is not None:
            services.executor.abort(session)
        closed = await services.sessions.close(user_id, name)
        if services.registry.active_shell_session(user_id) == name:
            services.registry.set_active_shell_session(user_id, DEFAULT_SESSION)
        await update.message.reply_text(f"Closed {name}." if closed else f"No session named {name}.")  # type: ignore[union-attr]
        return

    name = context.args[0]
    try:
        session = await services.sessions.get_or_create(user_id, name)
    except InputRejected as e:
        await update.message.reply_text(f"Rejected: {e}")  # type: ignore[union-attr]
        return
    services.registry.set_active_shell_session(user_id, name)
    await update.message.reply_text(f"Switched to {name} ({shorten_path(session.working_directory)})")  # type: ignore[union-attr]


@user_id_required
async def abort_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /abort command."""
    services = get_services()
    user_id, _ = _ids(update)
    session = await services.sessions.get(user_id, services.registry.active_shell_session(user_id))
    if session is not None and services.executor.abort(session):
        await update.message.reply_text("⛔ Command aborted.")  # type: ignore[union-attr]
    else:
        await update.message.reply_text("Nothing is running.")  # type: ignore[union-attr]


@user_id_required
async def confirm_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /confirm: run the command waiting for confirmation."""
    user_id, _ = _ids(update)
    command = get_services().registry.pop_pending_confirmation(user_id)
    if command is None:
        await update.message.reply_text("Nothing to confirm.")  # type: ignore[union-attr]
        return
    await _execute_command(update, context, command, skip_validation=True)


@user_id_required
async def cancel_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel: drop the command waiting for confirmation."""
    user_id, _ = _ids(update)
    dropped = get_services().registry.pop_pending_confirmation(user_id)
    await update.message.reply_text("Cancelled." if dropped else "Nothing to cancel.")  # type: ignore[union-attr]


@user_id_required
async def history_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /history command."""
    user_id, _ = _ids(update)
    rows = await get_recent_commands(user_id, limit=10)

    if not rows:
        await update.message.reply_text("No command history yet.")  # type: ignore[union-attr]
        return

    lines = ["Recent commands:\n"]
    for i, row in enumerate(rows, 1):
        if row.source == "assistant":
            status = "AI"
        else:
            status = "OK" if row.exit_code == 0 else f"ERR({row.exit_code})"
        cmd = row.command[:50] + ("..." if len(row.command) > 50 else "")
        lines.append(f"{i}. [{status}] {cmd} ({format_duration(row.duration_ms)})")

    await update.message.reply_text("\n".join(lines))  # type: ignore[union-attr]


@user_id_required
async def text_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text: relay to the assistant when attached, else run it."""
    text = (update.message.text or "").strip()  # type: ignore[union-attr]
    if not text:
        return

    services = get_services()
    user_id, _ = _ids(update)
    services.registry.set_last_command(user_id, text)

    if services.registry.is_attached(user_id):
        await _relay_to_assistant(update, context, text)
    else:
        await _execute_command(update, context, text)


# --- Internal helpers ---


async def _relay_to_assistant(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
    """Type the message into tmux and hand over to the live update engine."""
    services = get_services()
    user_id, chat_id = _ids(update)
    name = services.registry.current_session(user_id)
    if name is None:
        await update.message.reply_text("Not attached to any session. Use /attach first.")  # type: ignore[union-attr]
        return

    services.engine.stop(user_id)
    # Old scrollback would otherwise be mistaken for the new reply.
    await services.bridge.clear_scrollback(name)

    thinking = await update.message.reply_text("⏳ Sending to the assistant...")  # type: ignore[union-attr]
    sent = await services.bridge.send_keys(name, text) and await services.bridge.send_enter(name)
    if not sent:
        await thinking.edit_text(f"Could not reach tmux session {name}. Is it still running?")
        return

    await save_command(user_id=user_id, session_name=name, command=text, source="assistant")

    await asyncio.sleep(ECHO_SETTLE_SECONDS)
    screen = await services.bridge.capture_pane(name, services.config.tmux.capture_lines)
    services.registry.set_last_screen(user_id, screen)

    services.engine.start(
        user_id,
        chat_id,
        name,
        _channel(update, context),
        initial_screen=screen,
        message_id=thinking.message_id,
        user_text=text,
    )


async def _execute_command(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    command: str,
    skip_validation: bool = False,
) -> None:
    """Run a shell command in the user's active shell session and reply."""
    services = get_services()
    config = services.config
    user_id, _ = _ids(update)

    if not skip_validation:
        validation = validate_command(command)
        if not validation.allowed:
            await update.message.reply_text(f"🚫 Command blocked: {validation.reason}")  # type: ignore[union-attr]
            return
        if validation.requires_confirmation:
            services.registry.set_pending_confirmation(user_id, command)
            await update.message.reply_text(  # type: ignore[union-attr]
                f"⚠️ Confirmation required\n\n{command}\n\n{validation.reason}\n\n/confirm to run, /cancel to drop."
            )
            return

    if warning := interactive_warning(command):
        await update.message.reply_text(f"⚠️ {warning}")  # type: ignore[union-attr]

    name = services.registry.active_shell_session(user_id)
    session = await services.sessions.get_or_create(user_id, name)
    status = await update.message.reply_text(f"⏳ Running in {name}...\n{command[:50]}")  # type: ignore[union-attr]

    result = await services.executor.run(
        session,
        command,
        shell=config.terminal.shell,
        timeout_ms=config.terminal.timeout * 1000,
        max_output=config.terminal.max_output,
    )

    await save_command(
        user_id=user_id,
        session_name=name,
        command=command,
        cwd=session.working_directory,
        exit_code=result.exit_code,
        duration_ms=result.duration_ms,
        source="shell",
    )

    channel = _channel(update, context)
    await channel.delete(status.message_id)
    result.output = strip_ansi(result.output)
    await channel.send_safe(format_shell_result(result, command))
