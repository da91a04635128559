import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from sandbox_utils import positive_int

_MIB = 1024 * 1024

_DEFAULT_ALLOWED_ENV_KEYS = {
    "PATH",
    "HOME",
    "USER",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
    "TMPDIR",
    "TERM",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "SSL_CERT_FILE",
    "SSL_CERT_DIR",
    "TEXMFHOME",
    "TEXMFVAR",
    "TEXMFCONFIG",
    "SOURCE_DATE_EPOCH",
}

# Always applied to child processes, regardless of the allow list.
_FIXED_CHILD_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_CONFIG_NOSYSTEM": "1",
    "openin_any": "p",
    "openout_any": "p",
    "shell_escape": "f",
}


@dataclass(frozen=True)
class ResourceLimits:
    max_resources: int
    max_resource_bytes: int
    max_total_bytes: int


@dataclass(frozen=True)
class RepositoryLimits:
    max_file_bytes: int
    max_total_bytes: int
    max_files: int
    max_depth: int = 20


def _env_int(name: str, default: int) -> int:
    return positive_int(os.environ.get(name), default=default)


def _allowed_env_keys() -> set[str]:
    raw = os.environ.get("SANDBOX_COMPUTE_ALLOWED_ENV_KEYS", "")
    if not raw.strip():
        return set(_DEFAULT_ALLOWED_ENV_KEYS)
    parts = [part.strip() for part in raw.replace("\n", ",").split(",") if part.strip()]
    return set(parts) or set(_DEFAULT_ALLOWED_ENV_KEYS)


def _sandbox_env(extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    allowed = _allowed_env_keys()
    env = {key: value for key, value in os.environ.items() if key in allowed}
    env.setdefault("PATH", "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin")
    if extra_env:
        for key, value in extra_env.items():
            env[key] = str(value)
    env.update(_FIXED_CHILD_ENV)
    return env


def _api_key() -> Optional[str]:
    key = os.environ.get("LATEX_SERVICE_API_KEY", "").strip()
    return key or None


def _sandbox_root() -> Path:
    raw = os.environ.get("LATEX_SANDBOX_ROOT", "").strip()
    root = Path(raw) if raw else Path(tempfile.gettempdir())
    root.mkdir(parents=True, exist_ok=True)
    return root


def _resource_limits() -> ResourceLimits:
    return ResourceLimits(
        max_resources=_env_int("LATEX_MAX_RESOURCES", 100),
        max_resource_bytes=_env_int("LATEX_MAX_RESOURCE_BYTES", 10 * _MIB),
        max_total_bytes=_env_int("LATEX_MAX_TOTAL_BYTES", 50 * _MIB),
    )


def _repository_limits() -> RepositoryLimits:
    return RepositoryLimits(
        max_file_bytes=_env_int("LATEX_MAX_RESOURCE_BYTES", 10 * _MIB),
        max_total_bytes=_env_int("LATEX_MAX_REPO_BYTES", 50 * _MIB),
        max_files=_env_int("LATEX_MAX_REPO_FILES", 500),
    )


def _max_request_bytes() -> int:
    return _env_int("LATEX_MAX_REQUEST_BYTES", 100 * _MIB)


def _max_output_bytes() -> int:
    return _env_int("LATEX_MAX_OUTPUT_BYTES", 10 * _MIB)


def _compile_timeout_seconds() -> int:
    return _env_int("LATEX_COMPILE_TIMEOUT_SECONDS", 180)


def _deps_timeout_seconds() -> int:
    return _env_int("LATEX_DEPS_TIMEOUT_SECONDS", 60)


def _git_timeout_seconds() -> int:
    return _env_int("LATEX_GIT_TIMEOUT_SECONDS", 60)


def _git_archive_timeout_seconds() -> int:
    return _env_int("LATEX_GIT_ARCHIVE_TIMEOUT_SECONDS", 180)


def _git_refs_timeout_seconds() -> int:
    return _env_int("LATEX_GIT_REFS_TIMEOUT_SECONDS", 30)


def _rate_limit_window_seconds() -> int:
    return _env_int("LATEX_RATE_LIMIT_WINDOW_SECONDS", 60)


def _rate_limit_max_requests() -> int:
    return _env_int("LATEX_RATE_LIMIT_MAX_REQUESTS", 30)


def _rate_limit_max_entries() -> int:
    return _env_int("LATEX_RATE_LIMIT_MAX_ENTRIES", 10000)


def _rate_limit_sweep_seconds() -> int:
    return _env_int("LATEX_RATE_LIMIT_SWEEP_SECONDS", 60)


def _max_concurrent_jobs() -> int:
    return _env_int("LATEX_MAX_CONCURRENT_JOBS", 4)


def _max_queued_jobs() -> int:
    return _env_int("LATEX_MAX_QUEUED_JOBS", 20)


def _allowed_origins() -> List[str]:
    raw = os.environ.get("LATEX_ALLOWED_ORIGINS", "*")
    origins = [part.strip() for part in raw.split(",") if part.strip()]
    return origins or ["*"]
