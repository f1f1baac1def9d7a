"""Tests for the one-shot command executor (real subprocesses)."""

from __future__ import annotations

import asyncio
import time

import pytest

from termo.storage.models import Session
from termo.terminal.executor import ABORTED_EXIT_CODE, TIMEOUT_EXIT_CODE, CommandExecutor


@pytest.fixture
def session(tmp_path):
    return Session(name="default", owner_id=1, working_directory=str(tmp_path))


@pytest.fixture
def executor():
    return CommandExecutor(kill_grace=0.2)


class TestCommandExecutor:
    @pytest.mark.asyncio
    async def test_echo(self, executor, session):
        result = await executor.run(session, "echo hello", shell="/bin/sh")
        assert result.exit_code == 0
        assert result.output.strip() == "hello"
        assert not result.truncated
        assert result.new_working_directory is None
        assert not executor.is_running(session)

    @pytest.mark.asyncio
    async def test_runs_in_session_directory(self, executor, session, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        result = await executor.run(session, "ls", shell="/bin/sh")
        assert "marker.txt" in result.output

    @pytest.mark.asyncio
    async def test_stderr_is_appended(self, executor, session):
        result = await executor.run(session, "echo out; echo err >&2; exit 3", shell="/bin/sh")
        assert result.exit_code == 3
        assert "out" in result.output
        assert "err" in result.output

    @pytest.mark.asyncio
    async def test_cd_updates_working_directory(self, executor, session):
        result = await executor.run(session, "cd /", shell="/bin/sh")
        assert result.exit_code == 0
        assert result.new_working_directory == "/"
        assert session.working_directory == "/"
        assert result.output.strip() == ""

    @pytest.mark.asyncio
    async def test_cd_to_missing_directory(self, executor, session, tmp_path):
        result = await executor.run(session, "cd /definitely/not/here", shell="/bin/sh")
        assert result.exit_code != 0
        assert result.new_working_directory is None
        assert session.working_directory == str(tmp_path)

    @pytest.mark.asyncio
    async def test_chained_cd_keeps_other_output(self, executor, session):
        result = await executor.run(session, "cd / && echo hi", shell="/bin/sh")
        assert result.new_working_directory == "/"
        assert result.output.strip() == "hi"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, executor, session):
        started = time.monotonic()
        result = await executor.run(session, "sleep 999999", shell="/bin/sh", timeout_ms=500)
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.truncated
        assert "timed out" in result.output
        assert time.monotonic() - started < 5
        assert not executor.is_running(session)

    @pytest.mark.asyncio
    async def test_new_command_aborts_previous(self, executor, session):
        first = asyncio.create_task(executor.run(session, "sleep 999999", shell="/bin/sh"))
        await asyncio.sleep(0.3)
        assert executor.is_running(session)

        second = await executor.run(session, "echo second", shell="/bin/sh")
        first_result = await asyncio.wait_for(first, timeout=5)

        assert first_result.exit_code == ABORTED_EXIT_CODE
        assert "[Command aborted]" in first_result.output
        assert second.exit_code == 0
        assert second.output.strip() == "second"

    @pytest.mark.asyncio
    async def test_explicit_abort(self, executor, session):
        task = asyncio.create_task(executor.run(session, "sleep 999999", shell="/bin/sh"))
        await asyncio.sleep(0.3)
        assert executor.abort(session)
        result = await asyncio.wait_for(task, timeout=5)
        assert result.exit_code == ABORTED_EXIT_CODE
        assert not executor.abort(session)

    @pytest.mark.asyncio
    async def test_spawn_failure(self, executor, session):
        result = await executor.run(session, "echo hi", shell="/nonexistent/shell")
        assert result.exit_code == 1
        assert result.output.startswith("Error:")
        assert not executor.is_running(session)

    @pytest.mark.asyncio
    async def test_output_keeps_tail(self, executor, session):
        result = await executor.run(
            session,
            "i=0; while [ $i -lt 2000 ]; do echo line$i; i=$((i+1)); done",
            shell="/bin/sh",
            max_output=100,
        )
        assert result.exit_code == 0
        assert result.truncated
        assert len(result.output) <= 100
        assert "line1999" in result.output
        assert "line0\n" not in result.output
