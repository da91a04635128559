import hmac
import io
import json
import re
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qs, urlsplit

from python_multipart import parse_form
from python_multipart.exceptions import FormParserError

from latex_sandbox_server.errors import InvalidRequest, PayloadTooLarge

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_USERINFO_PATTERN = re.compile(r"(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*://)[^/@\s]+@")


@dataclass(frozen=True)
class Reply:
    status: int
    body: Union[Dict[str, Any], bytes]
    content_type: str = "application/json"
    headers: Tuple[Tuple[str, str], ...] = ()



@dataclass(frozen=True)
class UploadedFile:
    name: str
    content: bytes


@dataclass
class MultipartForm:
    fields: Dict[str, str] = field(default_factory=dict)
    files: List[UploadedFile] = field(default_factory=list)


@dataclass(frozen=True)
class Request:
    path: str
    payload: Dict[str, Any] = field(default_factory=dict)
    form: Optional[MultipartForm] = None
    request_id: str = ""


def json_reply(status: int, payload: Dict[str, Any], headers: Tuple[Tuple[str, str], ...] = ()) -> Reply:
    return Reply(status=status, body=payload, headers=headers)


def error_reply(status: int, message: str, **extra: Any) -> Reply:
    return Reply(status=status, body={"status": "error", "error": message, **extra})


def _status_line(status: int) -> str:
    try:
        return f"{status} {HTTPStatus(status).phrase}"
    except ValueError:
        return f"{status} Unknown"


def _write_reply(start_response: Callable, reply: Reply, extra_headers: List[Tuple[str, str]]) -> list[bytes]:
    if isinstance(reply.body, bytes):
        body = reply.body
    else:
        body = json.dumps(reply.body).encode("utf-8")
    headers = [
        ("Content-Type", reply.content_type),
        ("Content-Length", str(len(body))),
    ]
    headers.extend(reply.headers)
    headers.extend(extra_headers)
    start_response(_status_line(reply.status), headers)
    return [body]


def _elapsed_ms(started_at: float) -> int:
    return int(round((time.monotonic() - started_at) * 1000))


def _request_id(environ: Dict[str, Any], fallback: str) -> str:
    raw = environ.get("HTTP_X_REQUEST_ID")
    if isinstance(raw, str) and _REQUEST_ID_PATTERN.match(raw.strip()):
        return raw.strip()
    return fallback


def _safe_url_for_log(url: str) -> str:
    if not isinstance(url, str):
        return "<invalid-url>"
    trimmed = url.strip()
    if not trimmed:
        return "<empty-url>"
    parsed = urlsplit(trimmed)
    if parsed.scheme and parsed.hostname:
        netloc = parsed.hostname
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        path = parsed.path or "/"
        return f"{parsed.scheme}://{netloc}{path}"
    return trimmed.split("?", 1)[0].split("#", 1)[0]


def _redact_credentials(text: str) -> str:
    return _USERINFO_PATTERN.sub(r"\g<scheme>***@", text or "")


def _query_param(environ: Dict[str, Any], name: str) -> Optional[str]:
    values = parse_qs(environ.get("QUERY_STRING", "") or "").get(name)
    if not values:
        return None
    return values[0]


def _get_bearer_token(environ: Dict[str, Any]) -> Optional[str]:
    auth = environ.get("HTTP_AUTHORIZATION", "")
    if not auth:
        return None
    parts = auth.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip()


def _provided_api_key(environ: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    """Return the caller credential and whether it came from the query string."""
    header = environ.get("HTTP_X_API_KEY")
    if isinstance(header, str) and header.strip():
        return header.strip(), False
    bearer = _get_bearer_token(environ)
    if bearer:
        return bearer, False
    query = _query_param(environ, "api_key")
    if query:
        return query, True
    return None, False


def _check_api_key(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _content_length(environ: Dict[str, Any]) -> int:
    try:
        return max(int(environ.get("CONTENT_LENGTH") or "0"), 0)
    except ValueError:
        return 0


def _read_body(environ: Dict[str, Any], max_bytes: int) -> bytes:
    length = _content_length(environ)
    if length > max_bytes:
        raise PayloadTooLarge("Request body too large", limit=max_bytes)
    if length <= 0:
        return b""
    return environ["wsgi.input"].read(length)


def _parse_json(environ: Dict[str, Any], max_bytes: int) -> Dict[str, Any]:
    body = _read_body(environ, max_bytes)
    if not body:
        return {}
    try:
        data = json.loads(body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidRequest("Invalid JSON body.") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("JSON body must be an object.")
    return data


def _parse_multipart(environ: Dict[str, Any], max_bytes: int) -> MultipartForm:
    content_type = environ.get("CONTENT_TYPE", "") or ""
    if not content_type.lower().startswith("multipart/form-data"):
        raise InvalidRequest("Expected multipart/form-data body.")
    body = _read_body(environ, max_bytes)
    form = MultipartForm()
    parts: List[Any] = []

    def on_field(item: Any) -> None:
        name = (item.field_name or b"").decode("utf-8", errors="replace")
        value = (item.value or b"").decode("utf-8", errors="replace")
        form.fields[name] = value

    def on_file(item: Any) -> None:
        raw_name = item.file_name or item.field_name or b""
        handle = item.file_object
        handle.seek(0)
        form.files.append(UploadedFile(name=raw_name.decode("utf-8", errors="replace"), content=handle.read()))
        parts.append(item)

    headers = {"Content-Type": content_type, "Content-Length": str(len(body))}
    try:
        parse_form(headers, io.BytesIO(body), on_field, on_file)
    except (FormParserError, ValueError) as exc:
        raise InvalidRequest(f"Invalid multipart body: {exc}") from exc
    finally:
        # The parser still touches a part after on_file returns.
        for part in parts:
            part.close()
    return form
