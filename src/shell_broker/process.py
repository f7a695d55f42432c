"""
Process supervision for interactive shells.

A ``ProcessHandle`` is the small capability surface the rest of the
broker uses to talk to a running shell: write input, subscribe to
output and termination, terminate. ``SubprocessHandle`` implements it
on top of asyncio subprocesses; tests substitute a fake.

``ProcessSupervisor`` launches shells for sessions, wires their events
to the output relay and records output in the session history.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import socket
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

import structlog

from .config import Settings, get_settings
from .exceptions import ProcessSpawnError, SessionClosedError

if TYPE_CHECKING:
    from .models import Session
    from .relay import OutputRelay

logger = structlog.get_logger()

READ_CHUNK_SIZE = 4096

# How long to keep reading stdout/stderr after the shell itself exited.
# Background jobs may hold the pipes open indefinitely.
STREAM_DRAIN_TIMEOUT = 1.0

CONTROL_FD_ENV = "SHELL_BROKER_CONTROL_FD"

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]
SignalCallback = Callable[[str], None]


def signal_name(signum: int) -> str:
    """Render a signal number the way shells print it (SIGTERM, SIGKILL, ...)."""
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)


class ProcessHandle(ABC):
    """Capability interface over one running shell process."""

    def __init__(self) -> None:
        self._output_callbacks: list[OutputCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._signal_callbacks: list[SignalCallback] = []

    @property
    @abstractmethod
    def pid(self) -> Optional[int]:
        """Operating system process id, if any."""
        ...

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether the process has not yet reported termination."""
        ...

    @abstractmethod
    def start(self) -> None:
        """Begin delivering output and termination events."""
        ...

    @abstractmethod
    def write_input(self, data: bytes) -> bool:
        """Write raw bytes to stdin. Returns False if stdin is closed."""
        ...

    @abstractmethod
    async def terminate(self, grace_seconds: float) -> None:
        """Stop the process: SIGTERM first, SIGKILL once the grace period expires."""
        ...

    def on_output(self, callback: OutputCallback) -> None:
        self._output_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def on_signal(self, callback: SignalCallback) -> None:
        self._signal_callbacks.append(callback)

    def _emit(self, callbacks: list, value) -> None:
        for callback in callbacks:
            try:
                callback(value)
            except Exception as e:
                logger.error("Process event callback failed", pid=self.pid, error=str(e))

    def _emit_output(self, text: str) -> None:
        self._emit(self._output_callbacks, text)

    def _emit_exit(self, code: int) -> None:
        self._emit(self._exit_callbacks, code)

    def _emit_signal(self, name: str) -> None:
        self._emit(self._signal_callbacks, name)


class SubprocessHandle(ProcessHandle):
    """ProcessHandle backed by ``asyncio.subprocess.Process``."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        control_channel: Optional[socket.socket] = None,
    ):
        super().__init__()
        self._process = process
        self._control_channel = control_channel
        self._pumps: list[asyncio.Task] = []
        self._waiter: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def is_running(self) -> bool:
        return not self._finished.is_set()

    def start(self) -> None:
        if self._waiter is not None:
            return
        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                self._pumps.append(asyncio.create_task(self._pump(stream)))
        self._waiter = asyncio.create_task(self._wait())

    def write_input(self, data: bytes) -> bool:
        stdin = self._process.stdin
        if self._process.returncode is not None or stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(data)
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    async def terminate(self, grace_seconds: float) -> None:
        if not self.is_running:
            return

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        self._send_signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._wait_finished(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Shell ignored SIGTERM, killing", pid=self.pid)
            self._send_signal(signal.SIGKILL)
            await self._wait_finished()

    async def _wait_finished(self) -> None:
        if self._waiter is None:
            await self._process.wait()
            self._finished.set()
            return
        await self._finished.wait()

    def _send_signal(self, sig: signal.Signals) -> None:
        # The shell leads its own process group, so signal its children too.
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._emit_output(tail)
                return
            text = decoder.decode(chunk)
            if text:
                self._emit_output(text)

    async def _wait(self) -> None:
        returncode = await self._process.wait()

        if self._pumps:
            _, pending = await asyncio.wait(self._pumps, timeout=STREAM_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()

        if self._control_channel is not None:
            self._control_channel.close()

        self._finished.set()
        if returncode < 0:
            self._emit_signal(signal_name(-returncode))
        else:
            self._emit_exit(returncode)


async def launch_subprocess(argv: list[str], env: dict[str, str]) -> SubprocessHandle:
    """Start ``argv`` with piped stdio, a control socket and its own process group."""
    parent, child = socket.socketpair()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**env, CONTROL_FD_ENV: str(child.fileno())},
            pass_fds=(child.fileno(),),
            start_new_session=True,
        )
    except BaseException:
        parent.close()
        raise
    finally:
        child.close()

    return SubprocessHandle(process, control_channel=parent)


Launcher = Callable[[list[str], dict[str, str]], Awaitable[ProcessHandle]]


class ProcessSupervisor:
    """Spawns shells for sessions and routes their events to the relay."""

    def __init__(
        self,
        relay: OutputRelay,
        settings: Optional[Settings] = None,
        launcher: Launcher = launch_subprocess,
    ):
        self.relay = relay
        self.settings = settings or get_settings()
        self._launcher = launcher

    def build_command(self, shell_path: str, shell_args: list[str]) -> list[str]:
        """Command line for an interactive shell that sources the broker rc file."""
        argv = [shell_path]
        if Path(shell_path).name == "bash":
            # bash only honours long options ahead of everything else
            argv += ["--rcfile", str(self.settings.rc_file)]
        argv += shell_args
        argv.append("-i")
        return argv

    def build_environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PS1"] = self.settings.prompt
        env["SHELL_BROKER_PROMPT"] = self.settings.prompt
        env["ENV"] = str(self.settings.rc_file)
        return env

    async def spawn(
        self,
        session: Session,
        shell_path: str,
        shell_args: list[str],
    ) -> ProcessHandle:
        """
        Launch a shell for ``session`` and start relaying its events.

        Raises:
            ProcessSpawnError: if the shell binary could not be started.
        """
        argv = self.build_command(shell_path, shell_args)
        try:
            handle = await self._launcher(argv, self.build_environment())
        except (OSError, ValueError) as e:
            logger.warning(
                "Failed to spawn shell",
                session_id=session.id,
                shell_path=shell_path,
                error=str(e),
            )
            raise ProcessSpawnError(session.id, shell_path) from e

        session.process = handle
        self._bind(session, handle)
        handle.start()

        # Nudge the shell into printing its first prompt.
        handle.write_input(b"\n")

        logger.info("Shell spawned", session_id=session.id, pid=handle.pid, argv=argv)
        return handle

    def _bind(self, session: Session, handle: ProcessHandle) -> None:
        session_id = session.id

        def record_output(text: str) -> None:
            session.history.append(text)
            self.relay.shell_output(session_id, text)

        def record_exit(code: int) -> None:
            session.exit_code = code
            logger.info("Shell exited", session_id=session_id, exit_code=code)
            self.relay.shell_exited(session_id)

        def record_signal(name: str) -> None:
            session.exit_signal = name
            logger.info("Shell terminated by signal", session_id=session_id, signal=name)
            self.relay.shell_signalled(session_id, name)

        handle.on_output(record_output)
        handle.on_exit(record_exit)
        handle.on_signal(record_signal)

    def write_input(self, session: Session, data: bytes) -> None:
        """
        Write raw bytes to a session's shell.

        Raises:
            SessionClosedError: if the shell is gone or its stdin is closed.
        """
        if session.process is None or not session.process.write_input(data):
            raise SessionClosedError(session.id)

    async def terminate(self, session: Session, grace_seconds: Optional[float] = None) -> None:
        if session.process is None:
            return
        if grace_seconds is None:
            grace_seconds = self.settings.terminate_grace_seconds
        await session.process.terminate(grace_seconds)
