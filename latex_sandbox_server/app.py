import logging
import shutil
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from logging_config import bind_request_id, configure_logging, reset_request_id
from latex_sandbox_server.compile import (
    _handle_compile,
    _handle_compile_from_git,
    _handle_compile_upload,
    _handle_deps,
)
from latex_sandbox_server.config import (
    _allowed_origins,
    _api_key,
    _max_concurrent_jobs,
    _max_queued_jobs,
    _max_request_bytes,
    _rate_limit_max_entries,
    _rate_limit_max_requests,
    _rate_limit_sweep_seconds,
    _rate_limit_window_seconds,
)
from latex_sandbox_server.errors import SandboxError
from latex_sandbox_server.gateway import (
    _handle_git_archive,
    _handle_git_file,
    _handle_git_file_hash,
    _handle_git_refs,
    _handle_git_selective_archive,
    _handle_git_tree,
)
from latex_sandbox_server.jobs import JobQueue
from latex_sandbox_server.ratelimit import (
    InMemoryRateLimitStore,
    RateLimitSweeper,
    RateLimitStore,
    rate_limit_headers,
)
from latex_sandbox_server.toolchain import GIT, LATEXMK
from latex_sandbox_server.web import (
    Reply,
    Request,
    _check_api_key,
    _elapsed_ms,
    _parse_json,
    _parse_multipart,
    _provided_api_key,
    _request_id,
    _write_reply,
    error_reply,
    json_reply,
)

logger = logging.getLogger(__name__)
configure_logging()

_HEALTH_PATH = "/health"
_EXPOSED_HEADERS = "X-Dependencies, X-Request-Id, X-RateLimit-Limit, X-RateLimit-Remaining, X-RateLimit-Reset, Retry-After"


@dataclass(frozen=True)
class Route:
    handler: Callable[[Request], Reply]
    body: str = "json"
    queued: bool = False


_ROUTES: Dict[str, Route] = {
    "/compile": Route(_handle_compile, queued=True),
    "/compile/upload": Route(_handle_compile_upload, body="multipart", queued=True),
    "/compile-from-git": Route(_handle_compile_from_git, queued=True),
    "/deps": Route(_handle_deps, queued=True),
    "/git/refs": Route(_handle_git_refs, queued=True),
    "/git/tree": Route(_handle_git_tree, queued=True),
    "/git/file": Route(_handle_git_file, queued=True),
    "/git/archive": Route(_handle_git_archive, queued=True),
    "/git/selective-archive": Route(_handle_git_selective_archive, queued=True),
    "/git/file-hash": Route(_handle_git_file_hash, queued=True),
}


def _health_reply(queue: JobQueue) -> Reply:
    tools = {name: shutil.which(name) is not None for name in (LATEXMK, GIT)}
    return json_reply(200, {"status": "ok", "tools": tools, "queue": queue.stats()})


def _cors_headers(environ: Dict[str, Any]) -> List[Tuple[str, str]]:
    allowed = _allowed_origins()
    origin = environ.get("HTTP_ORIGIN")
    headers = []
    if "*" in allowed or (origin and origin in allowed):
        headers.append(("Access-Control-Allow-Origin", origin or "*"))
        if origin:
            headers.append(("Vary", "Origin"))
    headers.extend(
        [
            ("Access-Control-Allow-Methods", "POST, GET, OPTIONS"),
            ("Access-Control-Allow-Headers", "Content-Type, X-API-Key, Authorization, X-Request-Id"),
            ("Access-Control-Expose-Headers", _EXPOSED_HEADERS),
        ]
    )
    return headers


def _rate_limit_key(environ: Dict[str, Any], api_key: Optional[str]) -> str:
    if api_key:
        return f"key:{api_key}"
    return f"ip:{environ.get('REMOTE_ADDR') or 'unknown'}"


class LatexSandboxApp:
    """WSGI entry point: CORS, credential check and admission control ahead of the route table."""

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        sweep: bool = True,
        clock: Callable[[], float] = time.time,
        routes: Optional[Dict[str, Route]] = None,
        queue: Optional[JobQueue] = None,
    ) -> None:
        if store is None:
            store = InMemoryRateLimitStore(
                window_seconds=_rate_limit_window_seconds(),
                max_requests=_rate_limit_max_requests(),
                max_entries=_rate_limit_max_entries(),
            )
        self.store = store
        self.clock = clock
        self.routes = routes if routes is not None else _ROUTES
        self.queue = queue if queue is not None else JobQueue(_max_concurrent_jobs(), _max_queued_jobs())
        self._sweeper = RateLimitSweeper(store, _rate_limit_sweep_seconds(), clock) if sweep else None

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> list[bytes]:
        request_id = _request_id(environ, uuid4().hex)
        token = bind_request_id(request_id)
        try:
            return self._dispatch(environ, start_response, request_id)
        finally:
            reset_request_id(token)

    def _dispatch(self, environ: Dict[str, Any], start_response: Callable, request_id: str) -> list[bytes]:
        started_at = time.monotonic()
        path = (environ.get("PATH_INFO", "") or "").rstrip("/") or "/"
        method = environ.get("REQUEST_METHOD", "GET").upper()
        extra_headers = [("X-Request-Id", request_id), *_cors_headers(environ)]

        def respond(reply: Reply, reason: Optional[str] = None) -> list[bytes]:
            if reply.status >= 500:
                log = logger.error
            elif reply.status >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "Request finished path=%s method=%s http_status=%s reason=%s duration_ms=%s",
                path,
                method,
                reply.status,
                reason,
                _elapsed_ms(started_at),
            )
            return _write_reply(start_response, reply, extra_headers)

        if path == _HEALTH_PATH and method in ("GET", "HEAD"):
            return _write_reply(start_response, _health_reply(self.queue), extra_headers)

        if method == "OPTIONS":
            return _write_reply(start_response, Reply(status=200, body=b"", content_type="text/plain"), extra_headers)

        if self.queue.closed:
            return respond(error_reply(503, "Server is shutting down"), "shutting_down")

        if method != "POST":
            return respond(error_reply(405, "POST only."), "method_not_allowed")

        expected_key = _api_key()
        provided_key, from_query = _provided_api_key(environ)
        if not _check_api_key(expected_key, provided_key):
            return respond(error_reply(401, "Unauthorized: Invalid or missing API key"), "unauthorized")
        if expected_key and from_query:
            logger.warning("API key in query string is deprecated, use the X-API-Key header path=%s", path)

        if self._sweeper is not None:
            self._sweeper.start()
        decision = self.store.hit(_rate_limit_key(environ, provided_key if expected_key else None), self.clock())
        extra_headers.extend(rate_limit_headers(decision))
        if not decision.allowed:
            reply = error_reply(429, "Too many requests. Please try again later.", retryAfter=decision.retry_after)
            return respond(reply, "rate_limited")

        route = self.routes.get(path)
        if route is None:
            return respond(error_reply(404, "Unknown endpoint."), "unknown_endpoint")

        try:
            if route.body == "multipart":
                request = Request(path=path, form=_parse_multipart(environ, _max_request_bytes()), request_id=request_id)
            else:
                request = Request(path=path, payload=_parse_json(environ, _max_request_bytes()), request_id=request_id)
        except SandboxError as exc:
            return respond(Reply(status=exc.status_code, body=exc.payload()), "invalid_body")

        try:
            if route.queued:
                with self.queue.slot():
                    reply = route.handler(request)
            else:
                reply = route.handler(request)
        except SandboxError as exc:
            return respond(Reply(status=exc.status_code, body=exc.payload()), type(exc).__name__)
        except Exception:
            logger.exception("Request handler failed path=%s method=%s duration_ms=%s", path, method, _elapsed_ms(started_at))
            return respond(error_reply(500, "Internal server error"), "handler_error")

        return respond(reply)

    def shutdown(self) -> None:
        self.queue.close()
        if self._sweeper is not None:
            self._sweeper.stop()


def create_app(store: Optional[RateLimitStore] = None, *, sweep: bool = True, **kwargs: Any) -> LatexSandboxApp:
    return LatexSandboxApp(store, sweep=sweep, **kwargs)


application = create_app()
