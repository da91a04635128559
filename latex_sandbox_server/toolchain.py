import enum
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional

from latex_sandbox_server.paths import resolve_sandbox_path_checked

LATEXMK = "latexmk"
GIT = "git"


class Compiler(str, enum.Enum):
    PDFLATEX = "pdflatex"
    XELATEX = "xelatex"
    LUALATEX = "lualatex"

    @property
    def latexmk_flag(self) -> str:
        return _LATEXMK_FLAGS[self]

    @classmethod
    def names(cls) -> List[str]:
        return [member.value for member in cls]


_LATEXMK_FLAGS = {
    Compiler.PDFLATEX: "-pdf",
    Compiler.XELATEX: "-xelatex",
    Compiler.LUALATEX: "-lualatex",
}

DEFAULT_COMPILER = Compiler.PDFLATEX


def latexmk_args(compiler: Compiler, target_name: str, recorder: bool = False) -> List[str]:
    # -norc keeps a .latexmkrc shipped in the resources from being executed.
    args = [
        "-norc",
        compiler.latexmk_flag,
        "-interaction=nonstopmode",
        "-halt-on-error",
        "-file-line-error",
        "-bibtex",
    ]
    if recorder:
        args.append("-recorder")
    args.append(target_name)
    return args


@dataclass(frozen=True)
class TargetLayout:
    """Where a target lives in a sandbox and where latexmk leaves its outputs."""

    root: Path
    target: str

    @property
    def relative(self) -> PurePosixPath:
        return PurePosixPath(self.target)

    @property
    def workdir(self) -> Path:
        parent = self.relative.parent.as_posix()
        if parent in ("", "."):
            return Path(os.path.abspath(self.root))
        resolved = resolve_sandbox_path_checked(self.root, parent)
        return resolved if resolved is not None else Path(os.path.abspath(self.root))

    @property
    def name(self) -> str:
        return self.relative.name

    @property
    def stem(self) -> str:
        return self.relative.stem

    def _sibling(self, suffix: str) -> Optional[Path]:
        return resolve_sandbox_path_checked(self.root, self.relative.with_suffix(suffix).as_posix())

    def artifact_path(self) -> Optional[Path]:
        return self._sibling(".pdf")

    def log_path(self) -> Optional[Path]:
        return self._sibling(".log")

    def trace_path(self) -> Optional[Path]:
        return self._sibling(".fls")

    def aux_path(self) -> Optional[Path]:
        return self._sibling(".aux")

    def bcf_path(self) -> Optional[Path]:
        return self._sibling(".bcf")


def target_layout(root: Path, target: str) -> TargetLayout:
    return TargetLayout(root=root, target=target)


def read_text(path: Optional[Path], limit: Optional[int] = None) -> Optional[str]:
    """Read a generated text file, returning ``None`` when it is absent.

    With ``limit`` only the trailing ``limit`` bytes are kept.
    """
    if path is None:
        return None
    try:
        with open(path, "rb") as handle:
            if limit is not None:
                size = os.fstat(handle.fileno()).st_size
                if size > limit:
                    handle.seek(size - limit)
            data = handle.read()
    except OSError:
        return None
    return data.decode("utf-8", errors="replace")
