"""Predict the files a LaTeX source references without compiling it.

The scan is purely textual: every rule in :data:`MACRO_RULES` pairs a pattern
with a mapper that turns one match into candidate paths. Adding a macro family
means adding a row, not a new loop.
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Pattern, Tuple

IMAGE_EXTENSIONS = (".pdf", ".png", ".jpg", ".jpeg", ".eps", ".ps", ".svg", ".gif", ".bmp")

_COMMENT = re.compile(r"(?<!\\)%.*$")
_DRIVE = re.compile(r"^[A-Za-z]:")
_OPTIONAL_ARGS = r"(?:\s*\[[^\]]*\])*"


@dataclass(frozen=True)
class Dependency:
    path: str
    is_source_file: bool


# A candidate is (raw path, is_source_file, default extension).
Candidate = Tuple[str, bool, Optional[str]]


@dataclass(frozen=True)
class MacroRule:
    name: str
    pattern: Pattern[str]
    mapper: Callable[["re.Match[str]"], Iterable[Candidate]]


def _has_extension(path: str) -> bool:
    return bool(posixpath.splitext(posixpath.basename(path))[1])


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _with_default(extension: str, is_source: bool = False) -> Callable[["re.Match[str]"], Iterable[Candidate]]:
    def mapper(match: "re.Match[str]") -> Iterable[Candidate]:
        return [(name, is_source, extension) for name in _split_list(match.group("arg"))]

    return mapper


def _as_is(match: "re.Match[str]") -> Iterable[Candidate]:
    return [(match.group("arg"), False, None)]


def _always_tex(match: "re.Match[str]") -> Iterable[Candidate]:
    name = match.group("arg").strip()
    return [(name + ".tex", True, None)]


def _graphics(match: "re.Match[str]") -> Iterable[Candidate]:
    name = match.group("arg").strip()
    if _has_extension(name):
        return [(name, False, None)]
    return [(name + extension, False, None) for extension in IMAGE_EXTENSIONS]


_BIBLATEX_STYLE_OPTIONS = (
    ("style", (".bbx", ".cbx")),
    ("bibstyle", (".bbx",)),
    ("citestyle", (".cbx",)),
)


def _biblatex_styles(match: "re.Match[str]") -> Iterable[Candidate]:
    candidates: List[Candidate] = []
    for option in _split_list(match.group("options")):
        key, sep, value = option.partition("=")
        if not sep or not value.strip():
            continue
        for option_name, extensions in _BIBLATEX_STYLE_OPTIONS:
            if key.strip() == option_name:
                candidates.extend((value.strip(), False, extension) for extension in extensions)
    return candidates


def _imported(match: "re.Match[str]") -> Iterable[Candidate]:
    directory = match.group("dir").strip()
    name = match.group("arg").strip()
    joined = f"{directory.rstrip('/')}/{name}" if directory else name
    return [(joined, True, ".tex")]


def _macro(names: str, tail: str = r"\{(?P<arg>[^}]+)\}") -> Pattern[str]:
    return re.compile(r"\\(?:" + names + r")(?![A-Za-z])" + tail)


MACRO_RULES: Tuple[MacroRule, ...] = (
    MacroRule("input", _macro("input", r"\s*\{(?P<arg>[^}]+)\}"), _with_default(".tex", is_source=True)),
    MacroRule("include", _macro("include", r"\s*\{(?P<arg>[^}]+)\}"), _always_tex),
    MacroRule("includegraphics", _macro(r"includegraphics\*?", _OPTIONAL_ARGS + r"\s*\{(?P<arg>[^}]+)\}"), _graphics),
    MacroRule("bibliography", _macro("bibliography"), _with_default(".bib")),
    MacroRule("addbibresource", _macro("addbibresource", _OPTIONAL_ARGS + r"\s*\{(?P<arg>[^}]+)\}"), _with_default(".bib")),
    MacroRule("bibliographystyle", _macro("bibliographystyle"), _with_default(".bst")),
    MacroRule("usepackage", _macro("usepackage|RequirePackage", _OPTIONAL_ARGS + r"\s*\{(?P<arg>[^}]+)\}"), _with_default(".sty")),
    MacroRule(
        "biblatex-style",
        _macro("usepackage|RequirePackage", r"\s*\[(?P<options>[^\]]*)\]\s*\{\s*biblatex\s*\}"),
        _biblatex_styles,
    ),
    MacroRule("documentclass", _macro("documentclass|LoadClass", _OPTIONAL_ARGS + r"\s*\{(?P<arg>[^}]+)\}"), _with_default(".cls")),
    MacroRule("lstinputlisting", _macro("lstinputlisting", _OPTIONAL_ARGS + r"\s*\{(?P<arg>[^}]+)\}"), _as_is),
    MacroRule("verbatiminput", _macro(r"verbatiminput\*?"), _as_is),
    MacroRule("inputminted", _macro("inputminted", _OPTIONAL_ARGS + r"\s*\{[^}]*\}\s*\{(?P<arg>[^}]+)\}"), _as_is),
    MacroRule("import", _macro(r"(?:sub)?import\*?", r"\s*\{(?P<dir>[^}]*)\}\s*\{(?P<arg>[^}]+)\}"), _imported),
    MacroRule("subfile", _macro("subfile"), _with_default(".tex", is_source=True)),
)


def strip_comments(text: str) -> str:
    return "\n".join(_COMMENT.sub("", line) for line in text.split("\n"))


def _normalize(base_path: str, raw: str, default_extension: Optional[str]) -> Optional[str]:
    candidate = raw.strip().strip("\"'").strip()
    if not candidate:
        return None
    if candidate.startswith(("/", "\\")) or _DRIVE.match(candidate) or "://" in candidate:
        return None
    if default_extension and not _has_extension(candidate):
        candidate += default_extension
    joined = f"{base_path}/{candidate}" if base_path else candidate
    parts: List[str] = []
    for part in joined.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/".join(parts) or None


def extract_static_dependencies(source: str, base_path: str = "") -> List[Dependency]:
    text = strip_comments(source or "")
    base = (base_path or "").strip("/")
    seen = set()
    dependencies: List[Dependency] = []
    for rule in MACRO_RULES:
        for match in rule.pattern.finditer(text):
            for raw, is_source, default_extension in rule.mapper(match):
                path = _normalize(base, raw, default_extension)
                if path is None or path in seen:
                    continue
                seen.add(path)
                dependencies.append(Dependency(path=path, is_source_file=is_source))
    return dependencies
