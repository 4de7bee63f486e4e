"""Tests for the local subprocess runner."""

import asyncio

import pytest

from kubesetup.utils import async_command_runner
from kubesetup.utils.async_command_runner import CommandError, run_command


class _HangingProcess:
    """Child process whose output never arrives."""

    def __init__(self) -> None:
        self.returncode = None
        self.killed = False
        self.waited = False
        self.started = asyncio.Event()

    async def communicate(self, _input=None):
        self.started.set()
        await asyncio.Event().wait()

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        self.waited = True
        self.returncode = -9
        return self.returncode


class _FinishedProcess:
    returncode = 2

    async def communicate(self, _input=None):
        return b" out \n", b"err\n"


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_result_fields(self, monkeypatch):
        async def _spawn(*args, **kwargs):
            return _FinishedProcess()

        monkeypatch.setattr(async_command_runner.asyncio, "create_subprocess_exec", _spawn)

        result = await run_command(["ssh", "host", "true"])

        assert result.stdout == "out"
        assert result.stderr == "err"
        assert result.return_code == 2
        assert not result.ok

    @pytest.mark.asyncio
    async def test_missing_executable(self, monkeypatch):
        async def _spawn(*args, **kwargs):
            raise FileNotFoundError(2, "No such file or directory")

        monkeypatch.setattr(async_command_runner.asyncio, "create_subprocess_exec", _spawn)

        with pytest.raises(CommandError, match="Failed to start 'ssh'"):
            await run_command(["ssh", "host", "true"])

    @pytest.mark.asyncio
    async def test_cancel_kills_child(self, monkeypatch):
        proc = _HangingProcess()

        async def _spawn(*args, **kwargs):
            return proc

        monkeypatch.setattr(async_command_runner.asyncio, "create_subprocess_exec", _spawn)

        task = asyncio.ensure_future(run_command(["ssh", "host", "sleep 100"]))
        await proc.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert proc.killed
        assert proc.waited
