"""Fixtures for control-plane tests: an in-memory companion and an HTTP client."""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from godex.control_plane.app import create_app
from godex.control_plane.companion import CompanionUnavailableError
from godex.control_plane.execution.runner import RunManager
from godex.control_plane.managers.threads import ThreadCatalog
from godex.control_plane.models.companion import CompanionStatus, SpawnSpec
from godex.control_plane.models.enums import CompanionState
from godex.control_plane.settings import GodexSettings
from godex.control_plane.store.base import Store


class FakeCompanion:
    """Scripted stand-in for ``CompanionProcessManager``.

    ``responses`` maps a method to a value, an exception instance (raised),
    or a callable taking the params and returning either (or awaitable of either).
    """

    def __init__(self, cwd: str = "/tmp", *, ready: bool = True) -> None:
        self.ready = ready
        self.responses: dict[str, Any] = {}
        self.calls: list[tuple[str, Any]] = []
        self.log_lines: list[str] = []
        self._cwd = cwd
        self._subscribers: dict[int, Callable[[dict], None]] = {}
        self._next_token = 0

    @property
    def cwd(self) -> str:
        return self._cwd

    def is_ready(self) -> bool:
        return self.ready

    def get_status(self) -> CompanionStatus:
        state = CompanionState.READY if self.ready else CompanionState.ERROR
        return CompanionStatus(state=state, pid=4242 if self.ready else None)

    def get_log_lines(self) -> list[str]:
        return list(self.log_lines)

    def get_spawn_spec(self) -> SpawnSpec:
        return SpawnSpec(command="codex", args=["app-server"], cwd=self._cwd)

    def methods(self) -> list[str]:
        return [method for method, _ in self.calls]

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        if not self.ready:
            raise CompanionUnavailableError("codex app-server not ready")
        self.calls.append((method, params))
        response = self.responses.get(method)
        if callable(response):
            response = response(params)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response
        return response

    def subscribe(self, handler: Callable[[dict], None]) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = handler

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, message: dict) -> None:
        for handler in list(self._subscribers.values()):
            handler(message)


@pytest.fixture
def fake_companion(tmp_path) -> FakeCompanion:
    return FakeCompanion(str(tmp_path))


@pytest.fixture
def run_manager(store: Store) -> RunManager:
    return RunManager(store)


@pytest.fixture
def catalog(fake_companion: FakeCompanion, store: Store) -> ThreadCatalog:
    return ThreadCatalog(fake_companion, store)  # type: ignore[arg-type]


@pytest.fixture
def settings(tmp_path) -> GodexSettings:
    return GodexSettings(data_dir=str(tmp_path / "data"), auth_token=None, _env_file=None)


@pytest.fixture
async def client(
    settings: GodexSettings,
    store: Store,
    run_manager: RunManager,
    fake_companion: FakeCompanion,
    catalog: ThreadCatalog,
) -> AsyncIterator[AsyncClient]:
    """HTTP client against the app with components preset on ``app.state``.

    The lifespan is not run, so no real companion process is spawned.
    """
    app = create_app(settings)
    app.state.store = store
    app.state.run_manager = run_manager
    app.state.companion = fake_companion
    app.state.thread_catalog = catalog
    app.state.auth_token = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    await run_manager.wait_idle(timeout=10)
