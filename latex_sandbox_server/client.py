"""HTTP client for the sandbox service plus the resource-collection loops that drive it.

``collect_static_resources`` predicts what a document needs from its source
text; ``resolve_dependencies`` then asks ``/deps`` what is still missing and
fetches it until nothing new turns up.
"""

import json
import logging
import posixpath
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from latex_sandbox_server.deps_static import IMAGE_EXTENSIONS, extract_static_dependencies
from latex_sandbox_server.web import _elapsed_ms, _safe_url_for_log

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300
MISSING_FILE_EXTENSION_GUESSES = (".bbx", ".cbx", ".bib", ".sty", ".cls", ".bst")

ResourceDict = Dict[str, Any]
FileFetcher = Callable[[str], Optional[ResourceDict]]


class LatexServiceError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, log: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.log = log


@dataclass(frozen=True)
class CompiledDocument:
    pdf: bytes
    dependencies: List[str] = field(default_factory=list)


class LatexServiceClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers["X-API-Key"] = api_key

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        started_at = time.monotonic()
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.exception(
                "LaTeX service request failed url=%s duration_ms=%s",
                _safe_url_for_log(url),
                _elapsed_ms(started_at),
            )
            raise LatexServiceError(f"LaTeX service request failed: {exc}") from exc
        logger.info(
            "LaTeX service request url=%s http_status=%s duration_ms=%s",
            _safe_url_for_log(url),
            response.status_code,
            _elapsed_ms(started_at),
        )
        if not response.ok:
            raise _service_error(response)
        return response

    def health(self) -> Dict[str, Any]:
        url = f"{self.base_url}/health"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LatexServiceError(f"LaTeX service request failed: {exc}") from exc
        if not response.ok:
            raise _service_error(response)
        return response.json()

    def compile(self, resources: Sequence[ResourceDict], target: str, compiler: str = "pdflatex") -> CompiledDocument:
        response = self._post("/compile", {"resources": list(resources), "target": target, "compiler": compiler})
        dependencies: List[str] = []
        header = response.headers.get("X-Dependencies")
        if header:
            try:
                parsed = json.loads(header)
            except ValueError:
                logger.warning("Ignoring malformed X-Dependencies header")
            else:
                dependencies = [item for item in parsed if isinstance(item, str)]
        return CompiledDocument(pdf=response.content, dependencies=dependencies)

    def deps(self, resources: Sequence[ResourceDict], target: str, compiler: str = "pdflatex") -> Dict[str, Any]:
        return self._post("/deps", {"resources": list(resources), "target": target, "compiler": compiler}).json()

    def git_refs(
        self,
        git_url: str,
        branch: Optional[str] = None,
        auth: Optional[Dict[str, str]] = None,
        known_sha: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"gitUrl": git_url, "branch": branch, "auth": auth}
        if known_sha:
            payload["knownSha"] = known_sha
        return self._post("/git/refs", payload).json()

    def git_file(
        self,
        git_url: str,
        file_path: str,
        branch: Optional[str] = None,
        auth: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return self._post("/git/file", {"gitUrl": git_url, "filePath": file_path, "branch": branch, "auth": auth}).json()

    def git_archive(
        self,
        git_url: str,
        branch: Optional[str] = None,
        auth: Optional[Dict[str, str]] = None,
    ) -> List[ResourceDict]:
        return self._post("/git/archive", {"gitUrl": git_url, "branch": branch, "auth": auth}).json().get("files", [])


def _service_error(response: requests.Response) -> LatexServiceError:
    message = f"LaTeX service returned HTTP {response.status_code}"
    log = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(body.get("error") or message)
        log = body.get("log") if isinstance(body.get("log"), str) else None
    elif response.text:
        message = response.text[:500]
    return LatexServiceError(message, status_code=response.status_code, log=log)


def git_file_fetcher(
    client: LatexServiceClient,
    git_url: str,
    branch: Optional[str] = None,
    auth: Optional[Dict[str, str]] = None,
) -> FileFetcher:
    """Adapt ``/git/file`` into a fetcher that returns ``None`` for missing files."""

    def fetch(path: str) -> Optional[ResourceDict]:
        try:
            result = client.git_file(git_url, path, branch=branch, auth=auth)
        except LatexServiceError as exc:
            if exc.status_code in (400, 404):
                return None
            raise
        resource: ResourceDict = {"path": path, "content": result.get("content", "")}
        if result.get("encoding") == "base64":
            resource["encoding"] = "base64"
        return resource

    return fetch


def normalize_repository_path(base_dir: str, name: str) -> Optional[str]:
    """Join ``name`` onto ``base_dir``; ``None`` when it is absolute or climbs above the root."""
    name = name.strip()
    if not name or name.startswith(("/", "\\")) or "://" in name:
        return None
    parts: List[str] = []
    for part in f"{base_dir}/{name}".split("/") if base_dir else name.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not parts:
                return None
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts) or None


def _is_text_source(resource: ResourceDict) -> bool:
    return resource.get("encoding") != "base64" and str(resource.get("path", "")).endswith(".tex")


def collect_static_resources(fetch_file: FileFetcher, target: str, max_files: int = 100) -> List[ResourceDict]:
    collected: Dict[str, ResourceDict] = {}
    attempted = set()
    queue = [target]
    while queue and len(collected) < max_files:
        path = queue.pop(0)
        if path in attempted:
            continue
        attempted.add(path)
        resource = fetch_file(path)
        if resource is None:
            continue
        collected[path] = resource
        if not _is_text_source(resource):
            continue
        found_images = set()
        for dependency in extract_static_dependencies(str(resource.get("content", "")), posixpath.dirname(path)):
            if dependency.is_source_file:
                queue.append(dependency.path)
                continue
            stem, extension = posixpath.splitext(dependency.path)
            if extension.lower() in IMAGE_EXTENSIONS and stem in found_images:
                continue
            if dependency.path in attempted or len(collected) >= max_files:
                continue
            attempted.add(dependency.path)
            fetched = fetch_file(dependency.path)
            if fetched is not None:
                collected[dependency.path] = fetched
                if extension.lower() in IMAGE_EXTENSIONS:
                    found_images.add(stem)
    logger.info("Static resource collection target=%s files=%s attempted=%s", target, len(collected), len(attempted))
    return list(collected.values())


def resolve_dependencies(
    client: LatexServiceClient,
    resources: Sequence[ResourceDict],
    target: str,
    fetch_file: FileFetcher,
    max_iterations: int = 5,
    compiler: str = "pdflatex",
) -> Tuple[List[ResourceDict], List[str]]:
    """Grow ``resources`` until ``/deps`` reports nothing missing or nothing more can be fetched."""
    collected: Dict[str, ResourceDict] = {resource["path"]: resource for resource in resources}
    attempted = set(collected)
    dependencies: List[str] = []
    base_dir = posixpath.dirname(target)

    for iteration in range(max_iterations):
        result = client.deps(list(collected.values()), target, compiler)
        if result.get("dependencies"):
            dependencies = list(result["dependencies"])
        missing = result.get("missingFiles") or []
        logger.info(
            "Dependency resolution iteration=%s dependencies=%s missing=%s",
            iteration + 1,
            len(dependencies),
            len(missing),
        )
        if not missing:
            break

        to_fetch: List[str] = []
        for name in missing:
            full = normalize_repository_path(base_dir, name)
            if full is None:
                logger.info("Skipping missing file outside repository name=%s", name)
                continue
            candidates = [full]
            if not posixpath.splitext(posixpath.basename(full))[1]:
                candidates.extend(full + extension for extension in MISSING_FILE_EXTENSION_GUESSES)
            for candidate in candidates:
                if candidate not in attempted:
                    attempted.add(candidate)
                    to_fetch.append(candidate)
        if not to_fetch:
            break

        fetched = [resource for resource in map(fetch_file, to_fetch) if resource is not None]
        if not fetched:
            break
        for resource in fetched:
            collected.setdefault(resource["path"], resource)

    return list(collected.values()), dependencies
