"""Shared fixtures for the sandbox server tests."""

import io
import json
import os
from typing import Any, Dict, Optional, Tuple

import pytest
from hypothesis import Verbosity, settings

settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal, deadline=None)
settings.register_profile("ci", max_examples=300, verbosity=Verbosity.normal, deadline=None)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))

_ENV_PREFIXES = ("LATEX_", "SANDBOX_COMPUTE_")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def sandbox_root(tmp_path, monkeypatch):
    root = tmp_path / "sandboxes"
    root.mkdir()
    monkeypatch.setenv("LATEX_SANDBOX_ROOT", str(root))
    return root


def make_environ(
    path: str,
    method: str = "POST",
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    query: str = "",
    content_type: str = "application/json",
    remote_addr: str = "127.0.0.1",
) -> Dict[str, Any]:
    if body is None:
        raw = b""
    elif isinstance(body, bytes):
        raw = body
    else:
        raw = json.dumps(body).encode("utf-8")
    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "CONTENT_TYPE": content_type,
        "CONTENT_LENGTH": str(len(raw)),
        "REMOTE_ADDR": remote_addr,
        "wsgi.input": io.BytesIO(raw),
    }
    for name, value in (headers or {}).items():
        environ["HTTP_" + name.upper().replace("-", "_")] = value
    return environ


class CapturedResponse:
    def __init__(self) -> None:
        self.status = ""
        self.headers: Dict[str, str] = {}
        self.body = b""

    def start_response(self, status, headers, exc_info=None):
        self.status = status
        self.headers = dict(headers)

    @property
    def code(self) -> int:
        return int(self.status.split(" ", 1)[0])

    def json(self) -> Dict[str, Any]:
        return json.loads(self.body.decode("utf-8"))


def call_app(app, environ) -> CapturedResponse:
    captured = CapturedResponse()
    captured.body = b"".join(app(environ, captured.start_response))
    return captured


@pytest.fixture
def wsgi() -> Tuple[Any, Any]:
    return make_environ, call_app
