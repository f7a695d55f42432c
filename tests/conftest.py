"""
Shared fixtures: a fake process handle and an in-memory transport so the
broker can be exercised without spawning real shells.
"""

from typing import Optional

import pytest

from shell_broker.config import Settings
from shell_broker.process import ProcessHandle, ProcessSupervisor
from shell_broker.protocol import ControlProtocolHandler
from shell_broker.registry import SessionRegistry
from shell_broker.relay import OutputRelay


class FakeProcessHandle(ProcessHandle):
    """In-memory stand-in for a running shell."""

    _next_pid = 1000

    def __init__(self, argv: Optional[list[str]] = None):
        super().__init__()
        FakeProcessHandle._next_pid += 1
        self._pid = FakeProcessHandle._next_pid
        self.argv = argv or []
        self.running = True
        self.started = False
        self.stdin_open = True
        self.written: list[bytes] = []
        self.terminate_calls: list[float] = []

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    @property
    def is_running(self) -> bool:
        return self.running

    def start(self) -> None:
        self.started = True

    def write_input(self, data: bytes) -> bool:
        if not self.running or not self.stdin_open:
            return False
        self.written.append(data)
        return True

    async def terminate(self, grace_seconds: float) -> None:
        self.terminate_calls.append(grace_seconds)
        if self.running:
            self.finish(0)

    def emit(self, text: str) -> None:
        self._emit_output(text)

    def finish(self, code: int) -> None:
        self.running = False
        self._emit_exit(code)

    def kill(self, name: str) -> None:
        self.running = False
        self._emit_signal(name)


class FakeTransport:
    """Collects what the relay writes."""

    def __init__(self):
        self.data = bytearray()
        self.closing = False

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    def is_closing(self) -> bool:
        return self.closing

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")

    def clear(self) -> None:
        self.data.clear()


class FakeLauncher:
    """Launcher that records every command and hands out fake handles."""

    def __init__(self):
        self.calls: list[tuple[list[str], dict[str, str]]] = []
        self.handles: list[FakeProcessHandle] = []
        self.error: Optional[Exception] = None

    async def __call__(self, argv: list[str], env: dict[str, str]) -> FakeProcessHandle:
        self.calls.append((argv, env))
        if self.error is not None:
            raise self.error
        handle = FakeProcessHandle(argv)
        self.handles.append(handle)
        return handle


@pytest.fixture
def settings() -> Settings:
    return Settings(
        host="127.0.0.1",
        port=0,
        default_shell_path="/bin/bash",
        terminate_grace_seconds=0.5,
        max_sessions=0,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def relay(transport: FakeTransport) -> OutputRelay:
    return OutputRelay(transport)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def supervisor(relay: OutputRelay, settings: Settings, launcher: FakeLauncher) -> ProcessSupervisor:
    return ProcessSupervisor(relay, settings, launcher)


@pytest.fixture
def registry(supervisor: ProcessSupervisor) -> SessionRegistry:
    return SessionRegistry(supervisor)


@pytest.fixture
def handler(
    registry: SessionRegistry,
    supervisor: ProcessSupervisor,
    relay: OutputRelay,
    settings: Settings,
) -> ControlProtocolHandler:
    return ControlProtocolHandler(registry, supervisor, relay, settings)
