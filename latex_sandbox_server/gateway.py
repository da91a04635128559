"""Read-only access to remote git repositories through disposable shallow clones."""

import base64
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from urllib.parse import quote, urlsplit, urlunsplit

from latex_sandbox_server.config import (
    RepositoryLimits,
    _git_archive_timeout_seconds,
    _git_refs_timeout_seconds,
    _git_timeout_seconds,
    _repository_limits,
    _sandbox_env,
)
from latex_sandbox_server.errors import InvalidRequest, NotFound, RepositoryTooLarge, ResourceTooLarge, UpstreamError
from latex_sandbox_server.paths import is_plain_relative, resolve_sandbox_path_checked, sandbox_relative
from latex_sandbox_server.process import ProcessResult, run_process
from latex_sandbox_server.sandbox import Sandbox, sandbox_scope
from latex_sandbox_server.toolchain import GIT
from latex_sandbox_server.web import Reply, Request, _elapsed_ms, _redact_credentials, _safe_url_for_log, json_reply

logger = logging.getLogger(__name__)

BINARY_EXTENSIONS = frozenset(
    {
        ".pdf",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".bmp",
        ".tiff",
        ".tif",
        ".eps",
        ".ps",
        ".svg",
        ".ico",
        ".webp",
        ".zip",
        ".tar",
        ".gz",
    }
)

_ALLOWED_SCHEMES = ("http", "https")
# Refuse file:// and local-path transports even if a redirect or submodule asks for them.
_GIT_CONFIG_ARGS = ("-c", "protocol.file.allow=never")
_BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/+-]{0,254}$")
_HASH_TIMEOUT_SECONDS = 10
_FALLBACK_BRANCHES = ("main", "master")


def validate_git_url(url: Any) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidRequest("Missing gitUrl")
    url = url.strip()
    try:
        parsed = urlsplit(url)
    except ValueError as exc:
        raise InvalidRequest("Invalid gitUrl format") from exc
    if parsed.scheme.lower() not in _ALLOWED_SCHEMES or not parsed.hostname:
        raise InvalidRequest("Invalid gitUrl format")
    return url


def validate_branch(branch: Any) -> Optional[str]:
    if branch is None or branch == "":
        return None
    if not isinstance(branch, str) or not _BRANCH_PATTERN.match(branch) or ".." in branch:
        raise InvalidRequest("Invalid branch")
    return branch


def validate_file_path(value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidRequest("Missing filePath")
    if not is_plain_relative(value):
        raise InvalidRequest("Invalid filePath")
    return value


def build_authenticated_url(url: str, auth: Any) -> str:
    """Embed ``auth`` (``{"username", "password"}``) as percent-encoded user-info."""
    if not isinstance(auth, dict):
        return url
    username = auth.get("username")
    password = auth.get("password")
    if not username or not password:
        return url
    parsed = urlsplit(url)
    host = parsed.netloc.rpartition("@")[2]
    netloc = f"{quote(str(username), safe='')}:{quote(str(password), safe='')}@{host}"
    return urlunsplit((parsed.scheme, netloc, parsed.path, parsed.query, parsed.fragment))


def _git(args: List[str], cwd: Path, timeout_seconds: float) -> ProcessResult:
    return run_process(GIT, [*_GIT_CONFIG_ARGS, *args], cwd, timeout_seconds, env=_sandbox_env())


def _upstream_error(result: ProcessResult, fallback: str) -> UpstreamError:
    if result.timed_out:
        return UpstreamError("Git operation timed out")
    message = _redact_credentials(result.stderr.strip()) or fallback
    return UpstreamError(message)


def clone_repository(sandbox: Sandbox, url: str, branch: Optional[str], timeout_seconds: float) -> Path:
    """Shallow single-branch clone of ``url`` into the (empty) sandbox root."""
    started_at = time.monotonic()
    args = ["clone", "--depth", "1", "--single-branch"]
    if branch:
        args.extend(["--branch", branch])
    args.extend(["--", url, str(sandbox.root)])
    result = _git(args, sandbox.root, timeout_seconds)
    logger.info(
        "Git clone finished job_id=%s url=%s branch=%s success=%s timed_out=%s duration_ms=%s",
        sandbox.job_id,
        _safe_url_for_log(url),
        branch,
        result.exited_zero,
        result.timed_out,
        _elapsed_ms(started_at),
    )
    if not result.exited_zero:
        raise _upstream_error(result, "Failed to clone repository")
    return sandbox.root


def is_binary_path(path: str) -> bool:
    return os.path.splitext(path)[1].lower() in BINARY_EXTENSIONS


def _file_entry(relative: str, content: bytes) -> Dict[str, Any]:
    if is_binary_path(relative):
        return {"path": relative, "content": base64.b64encode(content).decode("ascii"), "encoding": "base64"}
    return {"path": relative, "content": content.decode("utf-8", errors="replace")}


@dataclass
class _ArchiveWalk:
    root: Path
    limits: RepositoryLimits
    extensions: Optional[Set[str]] = None
    paths: Optional[Set[str]] = None
    files: List[Dict[str, Any]] = field(default_factory=list)
    total_bytes: int = 0

    def _wanted(self, relative: str) -> bool:
        if self.extensions is None and self.paths is None:
            return True
        if self.extensions is not None and os.path.splitext(relative)[1].lower() in self.extensions:
            return True
        return self.paths is not None and relative in self.paths

    def walk(self, directory: Path, relative: str = "", depth: int = 0) -> None:
        if depth > self.limits.max_depth:
            logger.warning("Archive depth limit reached path=%s max_depth=%s", relative, self.limits.max_depth)
            return
        with os.scandir(directory) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
        for entry in entries:
            if entry.name == ".git":
                continue
            child = f"{relative}/{entry.name}" if relative else entry.name
            if entry.is_dir(follow_symlinks=False):
                self.walk(Path(entry.path), child, depth + 1)
                continue
            if not self._wanted(child):
                continue
            self._add(child)

    def _add(self, relative: str) -> None:
        resolved = resolve_sandbox_path_checked(self.root, relative)
        if resolved is None or not resolved.is_file():
            logger.info("Archive skipped entry path=%s reason=not_a_contained_file", relative)
            return
        size = resolved.stat().st_size
        if size > self.limits.max_file_bytes:
            logger.info("Archive skipped large file path=%s bytes=%s", relative, size)
            return
        self.total_bytes += size
        if self.total_bytes > self.limits.max_total_bytes:
            raise RepositoryTooLarge(
                "Repository content too large",
                totalSize=self.total_bytes,
                limit=self.limits.max_total_bytes,
            )
        if len(self.files) + 1 > self.limits.max_files:
            raise RepositoryTooLarge(
                "Too many files in repository",
                fileCount=len(self.files) + 1,
                limit=self.limits.max_files,
            )
        self.files.append(_file_entry(relative, resolved.read_bytes()))


def archive_repository(
    root: Path,
    limits: RepositoryLimits,
    extensions: Optional[Set[str]] = None,
    paths: Optional[Set[str]] = None,
) -> List[Dict[str, Any]]:
    walker = _ArchiveWalk(root=root, limits=limits, extensions=extensions, paths=paths)
    walker.walk(root)
    return walker.files


def parse_ls_remote(output: str) -> Dict[str, Any]:
    """Split ``git ls-remote --symref`` output into HEAD target and branch heads."""
    heads: Dict[str, str] = {}
    head_sha = None
    head_branch = None
    for line in output.splitlines():
        if line.startswith("ref: "):
            target, _, ref = line[5:].partition("\t")
            if ref.strip() == "HEAD" and target.startswith("refs/heads/"):
                head_branch = target[len("refs/heads/") :]
            continue
        sha, _, ref = line.partition("\t")
        ref = ref.strip()
        if ref == "HEAD":
            head_sha = sha.strip()
        elif ref.startswith("refs/heads/"):
            heads[ref[len("refs/heads/") :]] = sha.strip()
    if head_branch is None:
        head_branch = next((name for name in _FALLBACK_BRANCHES if name in heads), "master")
    return {"heads": heads, "head_sha": head_sha, "default_branch": head_branch}


def _commit_details(sandbox: Sandbox, url: str, branch: str, sha: str) -> Dict[str, Any]:
    details: Dict[str, Any] = {
        "message": "Latest commit",
        "date": None,
        "authorName": None,
        "authorEmail": None,
    }
    init = _git(["init", "--bare", "--quiet"], sandbox.root, _git_refs_timeout_seconds())
    if not init.exited_zero:
        logger.warning("Git init failed job_id=%s stderr=%s", sandbox.job_id, init.stderr.strip())
        return details
    refspec = f"refs/heads/{branch}:refs/heads/{branch}"
    fetch = _git(["fetch", "--depth=1", "--", url, refspec], sandbox.root, _git_refs_timeout_seconds())
    if not fetch.exited_zero:
        logger.warning(
            "Git fetch for commit details failed job_id=%s stderr=%s",
            sandbox.job_id,
            _redact_credentials(fetch.stderr.strip()),
        )
        return details
    log = _git(["log", "-1", "--format=%cI%n%an%n%ae%n%s", sha], sandbox.root, _git_refs_timeout_seconds())
    lines = log.stdout.strip().split("\n") if log.exited_zero else []
    if lines and lines[0]:
        details["date"] = lines[0]
        details["authorName"] = lines[1] if len(lines) > 1 and lines[1] else None
        details["authorEmail"] = lines[2] if len(lines) > 2 and lines[2] else None
        details["message"] = "\n".join(lines[3:]) or "Latest commit"
    return details


def _handle_git_refs(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))
    known_sha = payload.get("knownSha")
    remote = build_authenticated_url(url, payload.get("auth"))

    with sandbox_scope("git-refs") as sandbox:
        listing = _git(["ls-remote", "--symref", "--", remote], sandbox.root, _git_refs_timeout_seconds())
        if not listing.exited_zero:
            raise _upstream_error(listing, "Failed to access repository")
        refs = parse_ls_remote(listing.stdout)
        default_branch = refs["default_branch"]
        if branch:
            sha = refs["heads"].get(branch)
            if sha is None:
                raise NotFound(f"Branch not found: {branch}")
        else:
            sha = refs["heads"].get(default_branch) or refs["head_sha"]

        if known_sha and sha == known_sha:
            return json_reply(200, {"sha": sha, "defaultBranch": default_branch, "unchanged": True})

        details: Dict[str, Any] = {"message": "Latest commit", "date": None, "authorName": None, "authorEmail": None}
        if sha:
            details = _commit_details(sandbox, remote, branch or default_branch, sha)
    if not details["date"]:
        details["date"] = datetime.now(timezone.utc).isoformat()
    return json_reply(200, {"sha": sha, "defaultBranch": default_branch, **details})


def _handle_git_tree(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))
    requested = payload.get("path") or ""
    if not isinstance(requested, str):
        raise InvalidRequest("Invalid path")
    requested = requested.strip("/")

    with sandbox_scope("git-tree") as sandbox:
        root = clone_repository(sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_timeout_seconds())
        target = resolve_sandbox_path_checked(root, requested) if requested else root
        if target is None:
            raise InvalidRequest("Invalid path")
        if not target.is_dir():
            raise NotFound(f"Path not found: {requested}")
        files = []
        for entry in sorted(target.iterdir(), key=lambda item: item.name):
            if entry.name == ".git":
                continue
            files.append(
                {
                    "name": entry.name,
                    "path": f"{requested}/{entry.name}" if requested else entry.name,
                    "type": "dir" if entry.is_dir() and not entry.is_symlink() else "file",
                }
            )
    return json_reply(200, {"files": files})


def _handle_git_file(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    file_path = validate_file_path(payload.get("filePath"))
    branch = validate_branch(payload.get("branch"))
    limits = _repository_limits()

    with sandbox_scope("git-file") as sandbox:
        root = clone_repository(sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_timeout_seconds())
        target = resolve_sandbox_path_checked(root, file_path)
        if target is None:
            raise InvalidRequest("Invalid file path")
        if not target.is_file():
            raise NotFound(f"File not found: {file_path}")
        if target.stat().st_size > limits.max_file_bytes:
            raise ResourceTooLarge(f"Resource too large: {file_path}", limit=limits.max_file_bytes)
        content = target.read_bytes()
    if is_binary_path(file_path):
        return json_reply(200, {"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"})
    return json_reply(200, {"content": content.decode("utf-8", errors="replace"), "encoding": "utf-8"})


def _handle_git_archive(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))

    with sandbox_scope("git-archive") as sandbox:
        root = clone_repository(
            sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_archive_timeout_seconds()
        )
        files = archive_repository(root, _repository_limits())
    logger.info("Git archive built url=%s files=%s", _safe_url_for_log(url), len(files))
    return json_reply(200, {"files": files})


def _normalize_extensions(raw: Any) -> Optional[Set[str]]:
    if not isinstance(raw, list):
        return None
    normalized = set()
    for item in raw:
        if isinstance(item, str) and item.strip():
            extension = item.strip().lower()
            normalized.add(extension if extension.startswith(".") else f".{extension}")
    return normalized or None


def _normalize_paths(raw: Any) -> Optional[Set[str]]:
    if not isinstance(raw, list):
        return None
    normalized = {item.lstrip("/") for item in raw if isinstance(item, str) and item.strip()}
    return normalized or None


def _handle_git_selective_archive(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))
    extensions = _normalize_extensions(payload.get("extensions"))
    paths = _normalize_paths(payload.get("paths"))
    if extensions is None and paths is None:
        raise InvalidRequest("Must provide either 'extensions' or 'paths' array")

    with sandbox_scope("git-selective") as sandbox:
        root = clone_repository(
            sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_archive_timeout_seconds()
        )
        files = archive_repository(root, _repository_limits(), extensions=extensions, paths=paths)
    found = {entry["path"] for entry in files}
    missing = sorted(path for path in (paths or ()) if path not in found)
    return json_reply(200, {"files": files, "missingPaths": missing})


def _hash_file(sandbox: Sandbox, root: Path, file_path: Any) -> Optional[str]:
    target = resolve_sandbox_path_checked(root, file_path)
    if target is None or not target.is_file():
        return None
    result = _git(["hash-object", "--", sandbox_relative(root, target)], root, _HASH_TIMEOUT_SECONDS)
    if not result.exited_zero:
        logger.warning("Git hash-object failed job_id=%s path=%s", sandbox.job_id, file_path)
        return None
    return result.stdout.strip() or None


def _handle_git_file_hash(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))
    file_paths = payload.get("filePaths")
    single = payload.get("filePath")
    batch = isinstance(file_paths, list) and len(file_paths) > 0
    if batch:
        requested = [item for item in file_paths if isinstance(item, str)]
    elif isinstance(single, str) and single:
        requested = [single]
    else:
        raise InvalidRequest("Missing filePath or filePaths")

    with sandbox_scope("git-hash") as sandbox:
        root = clone_repository(sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_timeout_seconds())
        hashes = {path: _hash_file(sandbox, root, path) for path in requested}

    if batch:
        return json_reply(200, {"hashes": hashes})
    digest = hashes[single]
    if digest is None:
        raise NotFound(f"File not found or invalid: {single}")
    return json_reply(200, {"hash": digest})
