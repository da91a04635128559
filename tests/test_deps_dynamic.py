import os

from latex_sandbox_server.deps_dynamic import (
    extract_bibliography_names,
    extract_missing_files,
    extract_trace_dependencies,
    resolve_bibliography_dependencies,
)


def _trace(root, *inputs):
    lines = [f"PWD {root}"]
    lines.extend(f"INPUT {entry}" for entry in inputs)
    lines.append(f"OUTPUT {root}/main.pdf")
    return "\n".join(lines) + "\n"


def test_trace_keeps_only_sandbox_files_and_strips_root(tmp_path):
    root = os.path.realpath(tmp_path)
    trace = _trace(
        root,
        "/usr/share/texmf/tex/latex/base/article.cls",
        f"{root}/main.tex",
        f"{root}/sections/intro.tex",
        f"{root}/figures/plot.pdf",
        f"{root}/main.aux",
        f"{root}/main.run.xml",
        f"{root}/main.tex",
    )

    dependencies = extract_trace_dependencies(trace, tmp_path)

    assert [(dep.path, dep.is_source_file) for dep in dependencies] == [
        ("main.tex", True),
        ("sections/intro.tex", True),
        ("figures/plot.pdf", False),
    ]


def test_relative_trace_entries_resolve_against_pwd(tmp_path):
    root = os.path.realpath(tmp_path)
    trace = _trace(f"{root}/paper", "./chapter.tex", "../shared/macros.sty", "/etc/passwd")

    paths = [dep.path for dep in extract_trace_dependencies(trace, tmp_path)]

    assert paths == ["paper/chapter.tex", "shared/macros.sty"]


def test_relative_entries_cannot_climb_out_of_the_sandbox(tmp_path):
    root = os.path.realpath(tmp_path)
    trace = _trace(root, "../../etc/passwd")
    assert extract_trace_dependencies(trace, tmp_path) == []


def test_missing_trace_degrades_to_empty(tmp_path):
    assert extract_trace_dependencies(None, tmp_path) == []
    assert extract_trace_dependencies("", tmp_path) == []


def test_bibliography_names_from_aux_and_bcf():
    aux = "\\relax\n\\bibdata{refs,extra.bib}\n"
    bcf = '<bcf:datasource type="file" datatype="bibtex">library.bib</bcf:datasource>'

    assert extract_bibliography_names(aux, bcf) == ["refs.bib", "extra.bib", "library.bib"]
    assert extract_bibliography_names(None, None) == []


def test_bibliography_resolution_keeps_supplied_files_only(tmp_path):
    (tmp_path / "paper").mkdir()
    (tmp_path / "paper" / "refs.bib").write_text("@book{x}")
    (tmp_path / "library.bib").write_text("@book{y}")

    found = resolve_bibliography_dependencies(["refs.bib", "library.bib", "absent.bib"], tmp_path, "paper")

    assert [dep.path for dep in found] == ["paper/refs.bib", "library.bib"]


def test_missing_files_from_all_diagnostic_forms():
    log = "\n".join(
        [
            "! LaTeX Error: File `mystyle.sty' not found.",
            "Package biblatex Error: Style `ieee' not found.",
            "I couldn't open style file unsrtnat.bst",
            "I couldn't open database file refs.bib",
            "*** File `chapter2.tex' not found ***",
            "No file main.bbl.",
            "No file appendix.tex.",
            "! I can't find file `figures/plot'.",
            "! LaTeX Error: File `mystyle.sty' not found.",
        ]
    )

    assert extract_missing_files(log) == [
        "mystyle.sty",
        "ieee",
        "unsrtnat.bst",
        "refs.bib",
        "chapter2.tex",
        "appendix.tex",
        "figures/plot",
    ]


def test_missing_files_handles_empty_log():
    assert extract_missing_files(None) == []
    assert extract_missing_files("This is pdfTeX\nOutput written on main.pdf") == []
