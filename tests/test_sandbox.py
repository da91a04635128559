import shutil
import threading

import pytest

from latex_sandbox_server import sandbox as sandbox_module
from latex_sandbox_server.sandbox import (
    cleanup_pending_sandboxes,
    create_sandbox,
    destroy_sandbox,
    pending_sandbox_count,
    sandbox_scope,
)


def test_create_sandbox_makes_unique_private_directory(sandbox_root):
    first = create_sandbox("compile")
    second = create_sandbox("compile")
    try:
        assert first.root != second.root
        assert first.root.parent == sandbox_root
        assert first.root.name == f"latex-compile-{first.job_id}"
        assert (first.root.stat().st_mode & 0o777) == 0o700
    finally:
        destroy_sandbox(first)
        destroy_sandbox(second)


def test_destroy_is_idempotent(sandbox_root):
    sandbox = create_sandbox("deps")
    (sandbox.root / "main.tex").write_text("x")

    assert destroy_sandbox(sandbox) is True
    assert destroy_sandbox(sandbox) is True
    assert not sandbox.root.exists()


def test_scope_removes_directory_when_body_raises(sandbox_root):
    seen = {}
    with pytest.raises(RuntimeError):
        with sandbox_scope("compile") as sandbox:
            seen["root"] = sandbox.root
            (sandbox.root / "partial.tex").write_text("x")
            raise RuntimeError("boom")

    assert not seen["root"].exists()
    assert list(sandbox_root.iterdir()) == []


def test_cleanup_failure_is_logged_not_raised(sandbox_root, monkeypatch, caplog):
    def failing_rmtree(path):
        raise PermissionError("denied")

    monkeypatch.setattr(shutil, "rmtree", failing_rmtree)
    with sandbox_scope("compile") as sandbox:
        root = sandbox.root

    assert root.exists()
    assert "Sandbox cleanup failed" in caplog.text
    monkeypatch.undo()
    shutil.rmtree(root)


def test_pending_sandboxes_are_cleaned_up(sandbox_root):
    before = pending_sandbox_count()
    leftovers = [create_sandbox("git-tree") for _ in range(3)]

    assert pending_sandbox_count() == before + 3
    assert cleanup_pending_sandboxes() >= 3
    assert pending_sandbox_count() == 0
    assert all(not sandbox.root.exists() for sandbox in leftovers)


def test_concurrent_scopes_leave_nothing_behind(sandbox_root):
    roots = []
    lock = threading.Lock()

    def job():
        with sandbox_scope("compile") as sandbox:
            (sandbox.root / "main.tex").write_text("x")
            with lock:
                roots.append(sandbox.root)

    threads = [threading.Thread(target=job) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(roots)) == 8
    assert list(sandbox_root.iterdir()) == []
    assert sandbox_module.pending_sandbox_count() == 0
