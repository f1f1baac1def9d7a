"""One-shot shell command executor with timeout, abort and cd tracking."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field

from termo.errors import ProcessSpawnFailed, ProcessTimeout
from termo.storage.models import ExecutionResult, Session
from termo.terminal.sessions import SessionManager

logger = logging.getLogger(__name__)

CD_RE = re.compile(r"^\s*cd\s+(.+?)\s*$")
TIMEOUT_EXIT_CODE = 124
ABORTED_EXIT_CODE = 130
READ_CHUNK = 4096


class _TailBuffer:
    """Accumulates decoded output, dropping the head past 2x the budget."""

    def __init__(self, budget: int) -> None:
        self.budget = budget
        self.text = ""
        self.truncated = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, data: bytes, final: bool = False) -> None:
        self.text += self._decoder.decode(data, final=final)
        if len(self.text) > self.budget * 2:
            self.text = self.text[-self.budget :]
            self.truncated = True


@dataclass
class _Running:
    proc: asyncio.subprocess.Process
    aborted: bool = False
    kill_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)


def _exit_code(returncode: int | None) -> int:
    if returncode is None:
        return 1
    if returncode < 0:
        # Killed by signal N: report it the way a shell would.
        return 128 - returncode
    return returncode


async def _pump(stream: asyncio.StreamReader | None, buffer: _TailBuffer) -> None:
    if stream is None:
        return
    while True:
        data = await stream.read(READ_CHUNK)
        if not data:
            buffer.feed(b"", final=True)
            return
        buffer.feed(data)


async def _spawn(shell: str, command: str, cwd: str, env: dict[str, str]) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            shell,
            "-c",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    except (OSError, ValueError) as e:
        raise ProcessSpawnFailed(str(e)) from e


async def _collect(proc: asyncio.subprocess.Process, stdout: _TailBuffer, stderr: _TailBuffer, timeout: float) -> None:
    """Drain both pipes until the process exits. Raises ProcessTimeout."""
    try:
        await asyncio.wait_for(
            asyncio.gather(_pump(proc.stdout, stdout), _pump(proc.stderr, stderr), proc.wait()),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise ProcessTimeout(f"exceeded {timeout:g}s") from e


class CommandExecutor:
    """Run shell commands for chat users, one process per (user, session)."""

    def __init__(self, sessions: SessionManager | None = None, kill_grace: float = 1.0) -> None:
        self.sessions = sessions
        self.kill_grace = kill_grace
        self._running: dict[str, _Running] = {}

    def is_running(self, session: Session) -> bool:
        return session.key in self._running

    def abort(self, session: Session) -> bool:
        """Terminate the in-flight command for this session, if any.

        SIGTERM goes out immediately; SIGKILL follows after the grace window.
        """
        running = self._running.pop(session.key, None)
        session.is_running = False
        if running is None:
            return False
        running.aborted = True
        self._terminate_later(running)
        logger.info("Aborted command in session %s", session.key)
        return True

    def abort_all(self) -> None:
        for running in self._running.values():
            running.aborted = True
            self._terminate_later(running)
        self._running.clear()

    def _terminate_later(self, running: _Running) -> None:
        _signal_group(running.proc, signal.SIGTERM)
        loop = asyncio.get_running_loop()
        running.kill_handle = loop.call_later(self.kill_grace, _signal_group, running.proc, signal.SIGKILL)

    async def _terminate(self, running: _Running) -> None:
        _signal_group(running.proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(running.proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            _signal_group(running.proc, signal.SIGKILL)
            await running.proc.wait()

    async def run(
        self,
        session: Session,
        command: str,
        *,
        shell: str = "/bin/bash",
        timeout_ms: int = 300_000,
        max_output: int = 4000,
    ) -> ExecutionResult:
        """Execute a command in the session's working directory. Never raises."""
        key = session.key
        self.abort(session)

        cd_match = CD_RE.match(command)
        wrapped = f"{command} && pwd" if cd_match else command
        env = {
            **os.environ,
            "TERM": "xterm-256color",
            "HOME": os.environ.get("HOME", ""),
            "PATH": os.environ.get("PATH", ""),
        }

        start = time.monotonic()
        try:
            proc = await _spawn(shell, wrapped, session.working_directory, env)
        except ProcessSpawnFailed as e:
            logger.warning("Failed to spawn %s for %s: %s", shell, key, e)
            return ExecutionResult(
                output=f"Error: {e}",
                exit_code=1,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        running = _Running(proc)
        self._running[key] = running
        session.is_running = True

        stdout = _TailBuffer(max_output)
        stderr = _TailBuffer(max_output)
        timed_out = False
        try:
            await _collect(proc, stdout, stderr, timeout_ms / 1000)
        except ProcessTimeout:
            timed_out = True
            await self._terminate(running)
        except Exception as e:
            logger.exception("Error while running command for %s", key)
            await self._terminate(running)
            return self._finish(running, session, ExecutionResult(output=f"Error: {e}", exit_code=1))
        finally:
            if proc.returncode is None:
                # Cancelled from outside; don't leave the process behind.
                _signal_group(proc, signal.SIGKILL)

        duration_ms = int((time.monotonic() - start) * 1000)

        if running.aborted:
            return self._finish(
                running,
                session,
                ExecutionResult(
                    output=(stdout.text[-max_output:] + "\n\n[Command aborted]").lstrip(),
                    exit_code=ABORTED_EXIT_CODE,
                    duration_ms=duration_ms,
                    truncated=stdout.truncated,
                ),
            )

        if timed_out:
            partial = stdout.text + (f"\n{stderr.text}" if stderr.text else "")
            return self._finish(
                running,
                session,
                ExecutionResult(
                    output=partial[-max_output:] + f"\n\n[Command timed out after {round(duration_ms / 1000)}s]",
                    exit_code=TIMEOUT_EXIT_CODE,
                    duration_ms=duration_ms,
                    truncated=True,
                ),
            )

        exit_code = _exit_code(proc.returncode)
        output = stdout.text + (f"\n{stderr.text}" if stderr.text else "")
        truncated = stdout.truncated or stderr.truncated or len(output) > max_output
        output = output[-max_output:]

        new_cwd: str | None = None
        if cd_match and exit_code == 0:
            lines = output.strip().split("\n")
            candidate = lines[-1].strip() if lines else ""
            if candidate and os.path.isdir(candidate):
                new_cwd = candidate
                output = "\n".join(lines[:-1])
                if self.sessions is not None:
                    await self.sessions.update_cwd(session, new_cwd)
                else:
                    session.working_directory = new_cwd

        return self._finish(
            running,
            session,
            ExecutionResult(
                output=output,
                exit_code=exit_code,
                duration_ms=duration_ms,
                truncated=truncated,
                new_working_directory=new_cwd,
            ),
        )

    def _finish(self, running: _Running, session: Session, result: ExecutionResult) -> ExecutionResult:
        # A newer command may already own this key; leave it alone.
        if self._running.get(session.key) is running:
            del self._running[session.key]
            session.is_running = False
        return result
