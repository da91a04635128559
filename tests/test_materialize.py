import base64
import os

import pytest
from hypothesis import given
from hypothesis import strategies as st

from latex_sandbox_server.config import ResourceLimits
from latex_sandbox_server.errors import (
    AggregateTooLarge,
    InvalidPath,
    InvalidRequest,
    ResourceTooLarge,
    TooManyResources,
)
from latex_sandbox_server.materialize import Resource, materialize, parse_resources
from latex_sandbox_server.sandbox import Sandbox

LIMITS = ResourceLimits(max_resources=5, max_resource_bytes=64, max_total_bytes=100)


@pytest.fixture
def sandbox(tmp_path):
    root = tmp_path / "job"
    root.mkdir()
    return Sandbox(root=root, job_id="test")


def test_parse_resources_requires_a_list():
    with pytest.raises(InvalidRequest, match="Missing resources array"):
        parse_resources({"path": "main.tex"}, LIMITS)


def test_parse_resources_rejects_too_many():
    raw = [{"path": f"f{i}.tex", "content": ""} for i in range(6)]
    with pytest.raises(TooManyResources, match="Maximum is 5"):
        parse_resources(raw, LIMITS)


def test_parse_resources_requires_a_path():
    with pytest.raises(InvalidRequest, match="missing path"):
        parse_resources([{"content": "x"}], LIMITS)


def test_text_and_nested_paths_are_written(sandbox):
    job = materialize(
        sandbox,
        [Resource("main.tex", "\\input{sections/intro}"), Resource("sections/intro.tex", "Hello")],
        LIMITS,
    )

    assert job.paths == ["main.tex", "sections/intro.tex"]
    assert (sandbox.root / "sections" / "intro.tex").read_text() == "Hello"
    assert job.total_bytes == len("\\input{sections/intro}") + 5


def test_byte_list_encoding(sandbox):
    materialize(sandbox, [Resource("logo.png", [137, 80, 78, 71], encoding="bytes")], LIMITS)
    assert (sandbox.root / "logo.png").read_bytes() == b"\x89PNG"


@given(payload=st.binary(max_size=48))
def test_base64_round_trip(tmp_path_factory, payload):
    root = tmp_path_factory.mktemp("roundtrip")
    sandbox = Sandbox(root=root, job_id="rt")
    encoded = base64.b64encode(payload).decode("ascii")

    materialize(sandbox, [Resource("figure.pdf", encoded, encoding="base64")], LIMITS)

    assert (root / "figure.pdf").read_bytes() == payload


def test_wrapped_base64_is_sized_by_its_payload(sandbox):
    limits = ResourceLimits(max_resources=5, max_resource_bytes=1000, max_total_bytes=1000)
    wrapped = base64.encodebytes(b"\0" * 1000).decode("ascii")
    assert "\n" in wrapped

    materialize(sandbox, [Resource("zeros.bin", wrapped, encoding="base64")], limits)

    assert (sandbox.root / "zeros.bin").read_bytes() == b"\0" * 1000


def test_invalid_base64_is_rejected(sandbox):
    with pytest.raises(InvalidRequest, match="Invalid base64"):
        materialize(sandbox, [Resource("a.pdf", "é€", encoding="base64")], LIMITS)


def test_single_resource_over_ceiling_is_never_written(sandbox):
    with pytest.raises(ResourceTooLarge, match="big.tex"):
        materialize(sandbox, [Resource("big.tex", "x" * 65)], LIMITS)
    assert not (sandbox.root / "big.tex").exists()


def test_aggregate_ceiling_stops_before_overflowing_resource(sandbox):
    resources = [Resource("a.tex", "a" * 60), Resource("b.tex", "b" * 30), Resource("c.tex", "c" * 30)]

    with pytest.raises(AggregateTooLarge) as excinfo:
        materialize(sandbox, resources, LIMITS)

    assert excinfo.value.status_code == 413
    assert (sandbox.root / "a.tex").exists()
    assert (sandbox.root / "b.tex").exists()
    assert not (sandbox.root / "c.tex").exists()


def test_count_is_checked_before_any_write(sandbox):
    resources = [Resource(f"f{i}.tex", "x") for i in range(6)]
    with pytest.raises(TooManyResources):
        materialize(sandbox, resources, LIMITS)
    assert os.listdir(sandbox.root) == []


@pytest.mark.parametrize("path", ["../escape.tex", "/etc/passwd", "C:\\evil.tex", "a/../../b.tex", "."])
def test_escaping_paths_are_rejected(sandbox, path):
    with pytest.raises(InvalidPath):
        materialize(sandbox, [Resource(path, "x")], LIMITS)


def test_symlink_planted_earlier_cannot_redirect_writes(sandbox, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    os.symlink(outside, sandbox.root / "planted")

    with pytest.raises(InvalidPath):
        materialize(sandbox, [Resource("planted/pwn.tex", "x")], LIMITS)
    assert list(outside.iterdir()) == []


def test_file_used_as_directory_is_invalid_path(sandbox):
    with pytest.raises(InvalidPath):
        materialize(sandbox, [Resource("a.tex", "x"), Resource("a.tex/b.tex", "y")], LIMITS)
