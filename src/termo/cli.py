"""Command line interface: setup wizard, foreground bot, inspection."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from collections import deque
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from termo import __version__
from termo.config import (
    CONFIG_FILE,
    AppConfig,
    BotConfig,
    TerminalConfig,
    TmuxConfig,
    ensure_config_dir,
    load_config,
    save_config,
)
from termo.storage.models import TmuxSessionInfo
from termo.terminal.sanitizer import is_valid_session_name
from termo.terminal.tmux import TmuxBridge
from termo.utils.system import check_tmux

app = typer.Typer(
    name="termo",
    help="Drive an AI coding assistant in tmux from Telegram.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
SECRET_PREFIX = 8


def _fail(message: str) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)


def _require_config() -> AppConfig:
    if not CONFIG_FILE.exists():
        _fail("No configuration yet. Run 'termo init' first.")
    return load_config()


def _parse_user_ids(raw: str) -> list[int]:
    return [int(part) for part in (p.strip() for p in raw.split(",")) if part]


def _list_tmux_sessions() -> list[TmuxSessionInfo]:
    return asyncio.run(TmuxBridge().list_sessions())


def _sessions_table(sessions: list[TmuxSessionInfo]) -> Table:
    table = Table(title="tmux sessions")
    table.add_column("Name", style="cyan")
    table.add_column("Windows", justify="right")
    table.add_column("Created")
    table.add_column("Attached", style="green")
    for s in sessions:
        created = s.created_at.strftime("%Y-%m-%d %H:%M") if s.created_at else "-"
        table.add_row(s.name, str(s.window_count), created, "yes" if s.attached else "")
    return table


def _print_sessions(sessions: list[TmuxSessionInfo]) -> None:
    if sessions:
        console.print(_sessions_table(sessions))
    else:
        console.print("[dim]No tmux sessions running.[/dim]")


def _setup_logging(config: AppConfig) -> Path:
    ensure_config_dir()
    log_path = Path(config.logging.file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        handlers=[logging.FileHandler(str(log_path)), logging.StreamHandler()],
    )
    # httpx logs every long-poll request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return log_path


def _display(section: str, attr: str, value: Any) -> str:
    if (section, attr) == ("bot", "token"):
        return value[:SECRET_PREFIX] + "..." if value else "(not set)"
    if (section, attr) == ("bot", "allowed_users"):
        return ", ".join(map(str, value)) if value else "all"
    return str(value)


def _coerce(current: Any, raw: str) -> Any:
    """Convert raw to the type of the current value. Raises ValueError."""
    if isinstance(current, bool):
        return raw.lower() in ("true", "1", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return _parse_user_ids(raw)
    return raw


def _tail(path: Path, count: int) -> list[str]:
    with open(path, encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=count)]


@app.command()
def init() -> None:
    """Interactive setup wizard."""
    console.print(f"\n[bold]termo v{__version__} setup[/bold]\n")

    installed, tmux_info = check_tmux()
    if installed:
        console.print(f"tmux found: [green]{tmux_info}[/green]")
    else:
        console.print(f"[yellow]{tmux_info}[/yellow]")
        console.print("Setup can continue, but assistant mode stays unavailable until tmux is installed.")

    console.print("\n[bold]1/4[/bold] Bot token from @BotFather (https://t.me/BotFather)")
    token = typer.prompt("Token", default="", show_default=False).strip()
    if not token:
        _fail("A bot token is required.")

    console.print("\n[bold]2/4[/bold] Telegram user ids allowed to use the bot (comma separated, empty = anyone)")
    try:
        allowed_users = _parse_user_ids(typer.prompt("User ids", default="", show_default=False))
    except ValueError:
        _fail("User ids must be numbers.")

    console.print("\n[bold]3/4[/bold] tmux session the assistant runs in")
    session_name = typer.prompt("Session", default=TmuxConfig().default_session)
    if not is_valid_session_name(session_name):
        _fail("Session names may only use letters, digits, '-' and '_' (max 50).")

    console.print("\n[bold]4/4[/bold] Shell for one-shot commands")
    shell = typer.prompt("Shell", default=TerminalConfig().shell)
    if not Path(shell).exists():
        console.print(f"[yellow]{shell} does not exist here; commands will fail until it does.[/yellow]")

    save_config(
        AppConfig(
            bot=BotConfig(token=token, allowed_users=allowed_users),
            terminal=TerminalConfig(shell=shell),
            tmux=TmuxConfig(default_session=session_name),
        )
    )
    console.print(f"\n[green]Saved {CONFIG_FILE}[/green]")
    console.print("Start the bot with [bold]termo start[/bold].\n")


@app.command()
def start() -> None:
    """Run the bot in the foreground until interrupted."""
    config = _require_config()
    if not config.bot.token:
        _fail("Bot token is empty. Run 'termo init' or set TERMO_BOT_TOKEN.")

    installed, tmux_info = check_tmux()
    if not installed:
        console.print(f"[yellow]{tmux_info}[/yellow]")
        console.print("Shell commands will work; /attach will not.\n")

    log_path = _setup_logging(config)
    console.print(f"[green]Bot running.[/green] Logging to {log_path}. Ctrl+C stops it.\n")

    from termo.bot.app import run_bot

    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        pass
    console.print("[dim]Bot stopped.[/dim]")


@app.command()
def status() -> None:
    """Summarise the configuration and the running tmux sessions."""
    if CONFIG_FILE.exists():
        config = load_config()
        console.print(f"Config:  {CONFIG_FILE}")
        console.print(f"Session: {config.tmux.default_session}")
        console.print(f"Shell:   {config.terminal.shell} ({config.terminal.timeout}s timeout)")
        console.print(f"Users:   {_display('bot', 'allowed_users', config.bot.allowed_users)}")
    else:
        console.print("[yellow]Not configured. Run 'termo init'.[/yellow]")

    installed, tmux_info = check_tmux()
    if not installed:
        console.print(f"\n[yellow]{tmux_info}[/yellow]")
        return
    _print_sessions(_list_tmux_sessions())


@app.command()
def sessions() -> None:
    """List tmux sessions."""
    _print_sessions(_list_tmux_sessions())


@app.command()
def config(
    key: str = typer.Argument(None, help="section.key, e.g. refresh.poll_interval"),
    value: str = typer.Argument(None, help="New value"),
) -> None:
    """Show all settings, or set one."""
    cfg = _require_config()
    sections = cfg.sections()

    if key is None:
        table = Table(title="Configuration")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for section_name, section in sections.items():
            for attr, current in vars(section).items():
                table.add_row(f"{section_name}.{attr}", _display(section_name, attr, current))
        console.print(table)
        return

    if value is None:
        _fail("Usage: termo config <section.key> <value>")

    section_name, _, attr = key.partition(".")
    section = sections.get(section_name)
    if section is None or not attr:
        _fail(f"Unknown key: {key}")
    if attr not in vars(section):
        _fail(f"Unknown key: {key}")

    try:
        new_value = _coerce(getattr(section, attr), value)
    except ValueError:
        _fail(f"Invalid value for {key}: {value}")

    if key == "tmux.default_session" and not is_valid_session_name(new_value):
        _fail("Session names may only use letters, digits, '-' and '_' (max 50).")

    setattr(section, attr, new_value)
    save_config(cfg)
    console.print(f"[green]{key} = {_display(section_name, attr, new_value)}[/green]")


@app.command()
def logs(
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing new lines"),
) -> None:
    """Print the end of the bot log."""
    log_path = Path(load_config().logging.file).expanduser().resolve()
    if not log_path.exists():
        console.print("[dim]No log file yet.[/dim]")
        return

    if follow:
        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_path)])
        except KeyboardInterrupt:
            pass
        return

    for line in _tail(log_path, lines):
        console.print(line, markup=False, highlight=False)


@app.command()
def version() -> None:
    """Show termo, tmux and Python versions."""
    installed, tmux_info = check_tmux()
    console.print(f"termo v{__version__}")
    console.print(f"tmux: {tmux_info if installed else '[yellow]not installed[/yellow]'}")
    console.print(f"Python: {sys.version.split()[0]}")
    console.print(f"Config: {CONFIG_FILE}")


if __name__ == "__main__":
    app()
