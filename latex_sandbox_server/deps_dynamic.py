import logging
import os
import re
from pathlib import Path
from typing import Iterable, List, Optional, Union

from latex_sandbox_server.deps_static import Dependency
from latex_sandbox_server.paths import resolve_sandbox_path_checked, sandbox_relative

logger = logging.getLogger(__name__)

GENERATED_EXTENSIONS = (
    ".aux",
    ".log",
    ".fls",
    ".fdb_latexmk",
    ".out",
    ".toc",
    ".lof",
    ".lot",
    ".bbl",
    ".blg",
    ".bcf",
    ".run.xml",
    ".idx",
    ".ind",
    ".ilg",
    ".nav",
    ".snm",
    ".synctex.gz",
)

MISSING_FILE_PATTERNS = (
    # ! LaTeX Error: File `foo.sty' not found.
    re.compile(r"Error: File [`'\"](?P<name>[^'`\"]+)['`\"] not found"),
    # Package biblatex Error: Style `ieee' not found.
    re.compile(r"Style [`'\"](?P<name>[^'`\"]+)['`\"] not found"),
    # BibTeX: I couldn't open style file plain.bst
    re.compile(r"I couldn't open (?:style|database) file (?P<name>\S+)"),
    # *** File `x' not found ***
    re.compile(r"^\*+\s*File [`'\"](?P<name>[^'`\"]+)['`\"] not found", re.MULTILINE),
    # No file foo.bbl.
    re.compile(r"^No file (?P<name>\S+?)\.$", re.MULTILINE),
    # ! I can't find file `foo'.
    re.compile(r"I can't find file [`'\"](?P<name>[^'`\"]+)['`\"]"),
)

_BIBDATA = re.compile(r"\\bibdata\{([^}]+)\}")
_BCF_DATASOURCE = re.compile(r"<bcf:datasource[^>]*>([^<]+)</bcf:datasource>")

PathLike = Union[str, Path]


def is_generated(path: str) -> bool:
    return path.lower().endswith(GENERATED_EXTENSIONS)


def _roots(sandbox_root: PathLike) -> List[str]:
    base = os.path.abspath(str(sandbox_root))
    real = os.path.realpath(base)
    return [base] if real == base else [base, real]


def _strip_root(path: str, roots: Iterable[str]) -> Optional[str]:
    normalized = os.path.normpath(path)
    for root in roots:
        if normalized.startswith(root + os.sep):
            return normalized[len(root) + 1 :]
    return None


def extract_trace_dependencies(trace_text: Optional[str], sandbox_root: PathLike) -> List[Dependency]:
    """Return sandbox-relative files the compiler opened, as recorded by ``-recorder``.

    Paths outside the sandbox (the TeX distribution, fonts) and compiler
    byproducts are dropped.
    """
    if not trace_text:
        return []
    roots = _roots(sandbox_root)
    lines = trace_text.splitlines()
    pwd = roots[0]
    for line in lines:
        if line.startswith("PWD "):
            pwd = line[4:].strip()
            break

    seen = set()
    dependencies: List[Dependency] = []
    for line in lines:
        if not line.startswith("INPUT "):
            continue
        entry = line[6:].strip()
        if not entry:
            continue
        absolute = entry if os.path.isabs(entry) else os.path.join(pwd, entry)
        relative = _strip_root(absolute, roots)
        if relative is None:
            continue
        relative = relative.replace(os.sep, "/")
        if is_generated(relative) or relative in seen:
            continue
        seen.add(relative)
        dependencies.append(Dependency(path=relative, is_source_file=relative.endswith(".tex")))
    return dependencies


def _with_bib(name: str) -> str:
    name = name.strip()
    return name if name.endswith(".bib") else f"{name}.bib"


def extract_bibliography_names(aux_text: Optional[str], bcf_text: Optional[str]) -> List[str]:
    names: List[str] = []
    for match in _BIBDATA.finditer(aux_text or ""):
        names.extend(_with_bib(part) for part in match.group(1).split(",") if part.strip())
    for match in _BCF_DATASOURCE.finditer(bcf_text or ""):
        if match.group(1).strip():
            names.append(_with_bib(match.group(1)))
    return list(dict.fromkeys(names))


def resolve_bibliography_dependencies(
    names: Iterable[str],
    sandbox_root: PathLike,
    target_dir: str = "",
) -> List[Dependency]:
    """Keep only the bibliography databases that were actually supplied.

    Each name is looked up relative to the target's directory first, then the
    sandbox root.
    """
    found: List[Dependency] = []
    seen = set()
    for name in names:
        candidates = [f"{target_dir}/{name}", name] if target_dir else [name]
        for candidate in candidates:
            resolved = resolve_sandbox_path_checked(sandbox_root, candidate)
            if resolved is None or not resolved.is_file():
                continue
            relative = sandbox_relative(sandbox_root, resolved)
            if relative not in seen:
                seen.add(relative)
                found.append(Dependency(path=relative, is_source_file=False))
            break
    return found


def extract_missing_files(log_text: Optional[str]) -> List[str]:
    if not log_text:
        return []
    missing: List[str] = []
    for pattern in MISSING_FILE_PATTERNS:
        for match in pattern.finditer(log_text):
            name = match.group("name").strip()
            if name and not is_generated(name):
                missing.append(name)
    return list(dict.fromkeys(missing))
