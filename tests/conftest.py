import json
import shlex
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import httpx
import pytest

from agentlab.commands.base import CommonOptions
from agentlab.runner import CommandResult, CommandRunner

AGENTLAB_ENV = (
    "AGENTLAB_CONFIG",
    "AGENTLAB_ENDPOINT",
    "AGENTLAB_TOKEN",
    "AGENTLAB_JUMP_HOST",
    "AGENTLAB_JUMP_USER",
    "AGENTLAB_SSH_IDENTITY",
    "AGENTLAB_LOG_FILE",
    "AGENTLAB_LOG_LEVEL",
    "AGENTLAB_TAILSCALE_TAILNET",
    "AGENTLAB_TAILSCALE_API_KEY",
    "AGENTLAB_TAILSCALE_OAUTH_CLIENT_ID",
    "AGENTLAB_TAILSCALE_OAUTH_CLIENT_SECRET",
    "AGENTLAB_TAILSCALE_OAUTH_SCOPES",
)


class FakeRunner(CommandRunner):
    """Records every command and answers from scripted responses.

    Responses are matched by substring against the shell-joined argv; the
    most recently registered match wins. Unmatched commands succeed silently.
    """

    def __init__(self, available: Sequence[str] = ("ssh", "scp", "ip")):
        self.calls: list[list[str]] = []
        self.inputs: list[Any] = []
        self.available = set(available)
        self._responses: list[tuple[str, int, str, Exception | None]] = []

    def on(self, match: str, returncode: int = 0, output: str = "", error: Exception | None = None) -> None:
        self._responses.append((match, returncode, output, error))

    async def run(
        self,
        args: Sequence[str],
        timeout: float | None = None,
        stdin: bytes | Path | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandResult:
        argv = list(args)
        self.calls.append(argv)
        self.inputs.append(stdin)
        joined = shlex.join(argv)
        for match, returncode, output, error in reversed(self._responses):
            if match in joined:
                if error is not None:
                    raise error
                return CommandResult(argv, returncode, output)
        return CommandResult(argv, 0, "")

    def which(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.available else None

    def commands(self, match: str) -> list[list[str]]:
        return [argv for argv in self.calls if match in shlex.join(argv)]


Responder = Callable[[httpx.Request], httpx.Response]


class FakeAPI:
    """In-memory agentlabd: routes ``(method, path)`` to canned responses.

    A route's queued responses are served in order and the last one repeats.
    Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Responder]] = {}
        self.transport = httpx.MockTransport(self._handle)

    def add(
        self,
        method: str,
        path: str,
        body: Any = None,
        status: int = 200,
        content: bytes | None = None,
        handler: Responder | None = None,
    ) -> None:
        if handler is None:
            raw = content if content is not None else (json.dumps(body).encode() if body is not None else b"")

            def respond(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status, content=raw)

            handler = respond
        self._routes.setdefault((method, path), []).append(handler)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def body(self, method: str, path: str, index: int = -1) -> Any:
        request = self.calls(method, path)[index]
        return json.loads(request.content) if request.content else None


class FakePrompter:
    def __init__(self, interactive: bool = False, answers: Sequence[str] = ()):
        self.interactive = interactive
        self.answers = list(answers)
        self.prompts: list[str] = []

    def is_interactive(self) -> bool:
        return self.interactive

    def write(self, text: str) -> None:
        self.prompts.append(text)

    def read_line(self) -> str:
        return self.answers.pop(0) if self.answers else ""


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Keeps tests away from the real credentials file and working directory."""
    for name in AGENTLAB_ENV:
        monkeypatch.delenv(name, raising=False)
    xdg = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return xdg


@pytest.fixture
def api() -> FakeAPI:
    return FakeAPI()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def prompter() -> FakePrompter:
    return FakePrompter()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return tmp_path / "xdg" / "agentlab" / "config.json"


@pytest.fixture
def opts(api: FakeAPI, runner: FakeRunner, prompter: FakePrompter, config_file: Path) -> CommonOptions:
    return CommonOptions(transport=api.transport, runner=runner, prompter=prompter, config_path=config_file)
