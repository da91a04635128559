import atexit
import contextlib
import logging
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Set
from uuid import uuid4

from latex_sandbox_server.config import _sandbox_root
from latex_sandbox_server.web import _elapsed_ms

logger = logging.getLogger(__name__)

_pending_lock = threading.Lock()
_pending_roots: Set[Path] = set()


@dataclass(frozen=True)
class Sandbox:
    root: Path
    job_id: str


def create_sandbox(kind: str) -> Sandbox:
    job_id = uuid4().hex
    root = _sandbox_root() / f"latex-{kind}-{job_id}"
    root.mkdir(mode=0o700, parents=False, exist_ok=False)
    with _pending_lock:
        _pending_roots.add(root)
    logger.debug("Sandbox created kind=%s job_id=%s root=%s", kind, job_id, root)
    return Sandbox(root=root, job_id=job_id)


def _remove_tree(root: Path) -> bool:
    try:
        shutil.rmtree(root)
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Sandbox cleanup failed root=%s", root)
        return False
    finally:
        with _pending_lock:
            _pending_roots.discard(root)
    return True


def destroy_sandbox(sandbox: Sandbox) -> bool:
    started_at = time.monotonic()
    removed = _remove_tree(sandbox.root)
    logger.debug(
        "Sandbox destroyed job_id=%s removed=%s duration_ms=%s",
        sandbox.job_id,
        removed,
        _elapsed_ms(started_at),
    )
    return removed


@contextlib.contextmanager
def sandbox_scope(kind: str) -> Iterator[Sandbox]:
    sandbox = create_sandbox(kind)
    try:
        yield sandbox
    finally:
        destroy_sandbox(sandbox)


def pending_sandbox_count() -> int:
    with _pending_lock:
        return len(_pending_roots)


def cleanup_pending_sandboxes() -> int:
    with _pending_lock:
        roots = list(_pending_roots)
    if not roots:
        return 0
    logger.info("Cleaning up pending sandboxes count=%s", len(roots))
    cleaned = sum(1 for root in roots if _remove_tree(root))
    logger.info("Pending sandbox cleanup complete cleaned=%s failed=%s", cleaned, len(roots) - cleaned)
    return cleaned


atexit.register(cleanup_pending_sandboxes)
