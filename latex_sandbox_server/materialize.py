import base64
import binascii
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Sequence, Union

from latex_sandbox_server.config import ResourceLimits
from latex_sandbox_server.errors import (
    AggregateTooLarge,
    InvalidPath,
    InvalidRequest,
    ResourceTooLarge,
    TooManyResources,
)
from latex_sandbox_server.paths import resolve_sandbox_path_checked, sandbox_relative
from latex_sandbox_server.sandbox import Sandbox

logger = logging.getLogger(__name__)

ResourceContent = Union[str, bytes, List[int]]


@dataclass(frozen=True)
class Resource:
    path: str
    content: ResourceContent
    encoding: str = "utf-8"


@dataclass(frozen=True)
class MaterializedJob:
    paths: List[str]
    total_bytes: int


def parse_resources(raw: Any, limits: ResourceLimits) -> List[Resource]:
    if not isinstance(raw, list):
        raise InvalidRequest("Missing resources array")
    if len(raw) > limits.max_resources:
        raise TooManyResources(f"Too many resources. Maximum is {limits.max_resources}")
    resources: List[Resource] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise InvalidRequest(f"Invalid resource at index {index}")
        path = entry.get("path")
        if not isinstance(path, str) or not path:
            raise InvalidRequest("Invalid resource: missing path")
        content = entry.get("content")
        if content is None:
            content = ""
        if not isinstance(content, (str, list)):
            raise InvalidRequest(f"Invalid resource content: {path}")
        encoding = entry.get("encoding")
        resources.append(Resource(path=path, content=content, encoding=encoding if isinstance(encoding, str) else "utf-8"))
    return resources


def _predicted_size(resource: Resource) -> int:
    content = resource.content
    if resource.encoding == "base64" and isinstance(content, str):
        # b64decode skips line breaks, so they do not count towards the size.
        return (len("".join(content.split())) * 3) // 4
    if isinstance(content, (bytes, list)):
        return len(content)
    # UTF-8 never encodes a character in fewer bytes than one.
    return len(content)


def _decode(resource: Resource) -> bytes:
    content = resource.content
    if isinstance(content, bytes):
        return content
    if resource.encoding == "base64":
        if not isinstance(content, str):
            raise InvalidRequest(f"Invalid base64 content: {resource.path}")
        try:
            return base64.b64decode(content.encode("ascii"), validate=False)
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid base64 content: {resource.path}") from exc
    if isinstance(content, list):
        try:
            return bytes(content)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid byte content: {resource.path}") from exc
    return content.encode("utf-8")


def materialize(sandbox: Sandbox, resources: Sequence[Resource], limits: ResourceLimits) -> MaterializedJob:
    """Write ``resources`` into the sandbox in order.

    Limits are enforced before each write so a rejected resource never
    reaches the disk; resources written before the rejection are discarded
    together with the sandbox.
    """
    if len(resources) > limits.max_resources:
        raise TooManyResources(f"Too many resources. Maximum is {limits.max_resources}")
    written: List[str] = []
    total = 0
    for resource in resources:
        predicted = _predicted_size(resource)
        if predicted > limits.max_resource_bytes + 2:
            raise ResourceTooLarge(f"Resource too large: {resource.path}", limit=limits.max_resource_bytes)
        if total + predicted > limits.max_total_bytes + 2:
            raise AggregateTooLarge("Total resources size exceeds limit", limit=limits.max_total_bytes)
        content = _decode(resource)
        if len(content) > limits.max_resource_bytes:
            raise ResourceTooLarge(f"Resource too large: {resource.path}", limit=limits.max_resource_bytes)
        if total + len(content) > limits.max_total_bytes:
            raise AggregateTooLarge("Total resources size exceeds limit", limit=limits.max_total_bytes)
        target = resolve_sandbox_path_checked(sandbox.root, resource.path)
        if target is None or target == Path(os.path.abspath(sandbox.root)):
            raise InvalidPath(f"Invalid resource path: {resource.path}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as handle:
                handle.write(content)
        except (IsADirectoryError, NotADirectoryError, FileExistsError) as exc:
            raise InvalidPath(f"Invalid resource path: {resource.path}") from exc
        total += len(content)
        written.append(sandbox_relative(sandbox.root, target))
    logger.debug("Materialized resources job_id=%s count=%s bytes=%s", sandbox.job_id, len(written), total)
    return MaterializedJob(paths=written, total_bytes=total)
