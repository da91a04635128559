import json
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Sequence

from latex_sandbox_server.config import (
    _compile_timeout_seconds,
    _deps_timeout_seconds,
    _git_archive_timeout_seconds,
    _max_output_bytes,
    _resource_limits,
    _sandbox_env,
)
from latex_sandbox_server.deps_dynamic import (
    extract_bibliography_names,
    extract_missing_files,
    extract_trace_dependencies,
    resolve_bibliography_dependencies,
)
from latex_sandbox_server.deps_static import Dependency
from latex_sandbox_server.errors import InvalidRequest, NotFound
from latex_sandbox_server.gateway import build_authenticated_url, clone_repository, validate_branch, validate_git_url
from latex_sandbox_server.materialize import Resource, materialize, parse_resources
from latex_sandbox_server.paths import is_plain_relative, resolve_sandbox_path_checked
from latex_sandbox_server.process import ProcessResult, run_process
from latex_sandbox_server.sandbox import Sandbox, sandbox_scope
from latex_sandbox_server.toolchain import (
    DEFAULT_COMPILER,
    LATEXMK,
    Compiler,
    TargetLayout,
    latexmk_args,
    read_text,
    target_layout,
)
from latex_sandbox_server.web import Reply, Request, _elapsed_ms, error_reply, json_reply

logger = logging.getLogger(__name__)


def validate_target(target: Any) -> str:
    if not isinstance(target, str) or not target:
        raise InvalidRequest("Missing target file")
    if not target.endswith(".tex"):
        raise InvalidRequest("Target must be a .tex file")
    if not is_plain_relative(target):
        raise InvalidRequest("Invalid target path")
    name = target.replace("\\", "/").rsplit("/", 1)[-1]
    # latexmk would parse a leading dash as an option.
    if name.startswith("-"):
        raise InvalidRequest("Invalid target path")
    return target


def validate_compiler(value: Any) -> Compiler:
    if value is None or value == "":
        return DEFAULT_COMPILER
    try:
        return Compiler(value)
    except ValueError:
        raise InvalidRequest(f"Invalid compiler. Use: {', '.join(Compiler.names())}") from None


@dataclass(frozen=True)
class CompileRun:
    layout: TargetLayout
    result: ProcessResult


def _discard_previous_outputs(layout: TargetLayout) -> None:
    # A PDF, log or trace shipped with the sources must not pass for this run's output.
    for output in (layout.artifact_path(), layout.log_path(), layout.trace_path()):
        if output is not None and not output.is_dir():
            output.unlink(missing_ok=True)


def _run_latexmk(sandbox: Sandbox, target: str, compiler: Compiler, timeout_seconds: int) -> CompileRun:
    layout = target_layout(sandbox.root, target)
    source = resolve_sandbox_path_checked(sandbox.root, target)
    if source is None or not source.is_file():
        raise InvalidRequest(f"Target file not found in resources: {target}")
    _discard_previous_outputs(layout)
    result = run_process(
        LATEXMK,
        latexmk_args(compiler, layout.name, recorder=True),
        layout.workdir,
        timeout_seconds,
        env=_sandbox_env(),
    )
    return CompileRun(layout=layout, result=result)


def _failure_log(run: CompileRun) -> str:
    log = read_text(run.layout.log_path(), limit=_max_output_bytes())
    return log if log is not None else run.result.combined_log


def _observed_dependencies(sandbox: Sandbox, run: CompileRun) -> List[Dependency]:
    layout = run.layout
    dependencies = extract_trace_dependencies(read_text(layout.trace_path()), sandbox.root)
    names = extract_bibliography_names(read_text(layout.aux_path()), read_text(layout.bcf_path()))
    target_dir = layout.relative.parent.as_posix()
    known = {dependency.path for dependency in dependencies}
    for dependency in resolve_bibliography_dependencies(names, sandbox.root, "" if target_dir == "." else target_dir):
        if dependency.path not in known:
            known.add(dependency.path)
            dependencies.append(dependency)
    return dependencies


def _compile_reply(sandbox: Sandbox, run: CompileRun) -> Reply:
    artifact = run.layout.artifact_path()
    if artifact is None or not artifact.is_file():
        return error_reply(400, "Compilation failed", log=_failure_log(run), timedOut=run.result.timed_out)
    body = artifact.read_bytes()
    headers = []
    dependencies = sorted(dependency.path for dependency in _observed_dependencies(sandbox, run))
    if dependencies:
        headers.append(("X-Dependencies", json.dumps(dependencies)))
    return Reply(status=200, body=body, content_type="application/pdf", headers=tuple(headers))


def _log_compile(kind: str, sandbox: Sandbox, target: str, compiler: Compiler, reply: Reply, started_at: float) -> None:
    logger.info(
        "Compile finished kind=%s job_id=%s target=%s compiler=%s http_status=%s bytes=%s duration_ms=%s",
        kind,
        sandbox.job_id,
        target,
        compiler.value,
        reply.status,
        len(reply.body) if isinstance(reply.body, bytes) else 0,
        _elapsed_ms(started_at),
    )


def _compile_resources(kind: str, resources: Sequence[Resource], target: str, compiler: Compiler) -> Reply:
    started_at = time.monotonic()
    with sandbox_scope(kind) as sandbox:
        materialize(sandbox, resources, _resource_limits())
        run = _run_latexmk(sandbox, target, compiler, _compile_timeout_seconds())
        reply = _compile_reply(sandbox, run)
        _log_compile(kind, sandbox, target, compiler, reply, started_at)
    return reply


def _handle_compile(request: Request) -> Reply:
    payload = request.payload
    resources = parse_resources(payload.get("resources"), _resource_limits())
    target = validate_target(payload.get("target"))
    compiler = validate_compiler(payload.get("compiler"))
    return _compile_resources("compile", resources, target, compiler)


def _handle_compile_upload(request: Request) -> Reply:
    form = request.form
    if form is None:
        raise InvalidRequest("Expected multipart/form-data body.")
    target = validate_target(form.fields.get("target"))
    compiler = validate_compiler(form.fields.get("compiler"))
    resources = [Resource(path=upload.name, content=upload.content, encoding="raw") for upload in form.files]
    return _compile_resources("upload", resources, target, compiler)


def _handle_deps(request: Request) -> Reply:
    payload = request.payload
    limits = _resource_limits()
    resources = parse_resources(payload.get("resources"), limits)
    target = validate_target(payload.get("target"))
    compiler = validate_compiler(payload.get("compiler"))
    started_at = time.monotonic()

    with sandbox_scope("deps") as sandbox:
        materialize(sandbox, resources, limits)
        run = _run_latexmk(sandbox, target, compiler, _deps_timeout_seconds())
        dependencies = _observed_dependencies(sandbox, run)
        log_text = read_text(run.layout.log_path(), limit=_max_output_bytes()) or ""
        missing = extract_missing_files(log_text + "\n" + run.result.combined_log)
        artifact = run.layout.artifact_path()
        success = artifact is not None and artifact.is_file()
        logger.info(
            "Dependency scan finished job_id=%s target=%s success=%s dependencies=%s missing=%s duration_ms=%s",
            sandbox.job_id,
            target,
            success,
            len(dependencies),
            len(missing),
            _elapsed_ms(started_at),
        )

    return json_reply(
        200,
        {
            "status": "ok",
            "success": success,
            "dependencies": [dependency.path for dependency in dependencies],
            "missingFiles": missing,
            "providedFiles": [resource.path for resource in resources],
            "timedOut": run.result.timed_out,
        },
    )


def _handle_compile_from_git(request: Request) -> Reply:
    payload = request.payload
    url = validate_git_url(payload.get("gitUrl"))
    branch = validate_branch(payload.get("branch"))
    target = validate_target(payload.get("target"))
    compiler = validate_compiler(payload.get("compiler"))
    started_at = time.monotonic()

    with sandbox_scope("git-compile") as sandbox:
        clone_repository(
            sandbox, build_authenticated_url(url, payload.get("auth")), branch, _git_archive_timeout_seconds()
        )
        source = resolve_sandbox_path_checked(sandbox.root, target)
        if source is None or not source.is_file():
            raise NotFound(f"Target file not found: {target}")
        run = _run_latexmk(sandbox, target, compiler, _compile_timeout_seconds())
        reply = _compile_reply(sandbox, run)
        _log_compile("git", sandbox, target, compiler, reply, started_at)
    return reply
