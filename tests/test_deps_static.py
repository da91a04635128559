import pytest
from hypothesis import given
from hypothesis import strategies as st

from latex_sandbox_server.deps_static import (
    IMAGE_EXTENSIONS,
    MACRO_RULES,
    Dependency,
    extract_static_dependencies,
    strip_comments,
)


def _paths(source, base_path=""):
    return [dependency.path for dependency in extract_static_dependencies(source, base_path)]


def test_input_without_extension_is_a_source_file():
    assert extract_static_dependencies(r"\input{sections/intro}") == [
        Dependency(path="sections/intro.tex", is_source_file=True)
    ]


def test_input_keeps_existing_extension():
    assert _paths(r"\input{macros.def}") == ["macros.def"]


def test_include_always_appends_tex():
    assert extract_static_dependencies(r"\include{chapter1}") == [Dependency("chapter1.tex", True)]


def test_graphics_without_extension_lists_every_image_candidate():
    dependencies = extract_static_dependencies(r"\includegraphics[width=\linewidth]{fig1}")
    assert [dependency.path for dependency in dependencies] == [f"fig1{ext}" for ext in IMAGE_EXTENSIONS]
    assert not any(dependency.is_source_file for dependency in dependencies)


def test_graphics_with_extension_is_used_as_is():
    assert _paths(r"\includegraphics*[trim=1 2 3 4][scale=.5]{img/plot.png}") == ["img/plot.png"]


def test_graphics_extension_check_ignores_dots_in_directories():
    assert _paths(r"\includegraphics{v1.2/plot}")[0] == "v1.2/plot.pdf"


def test_bibliography_lists_are_split():
    assert _paths(r"\bibliography{refs, more.bib}") == ["refs.bib", "more.bib"]
    assert _paths(r"\addbibresource[datatype=bibtex]{library}") == ["library.bib"]
    assert _paths(r"\bibliographystyle{unsrtnat}") == ["unsrtnat.bst"]


def test_packages_and_classes():
    source = "\\documentclass[11pt]{thesis}\n\\usepackage{amsmath,mystyle}\n\\RequirePackage{local}\n\\LoadClass{base}"
    assert set(_paths(source)) == {"thesis.cls", "amsmath.sty", "mystyle.sty", "local.sty", "base.cls"}


def test_biblatex_style_options_emit_style_files():
    paths = _paths("\\usepackage[style=ieee]{biblatex}\n\\usepackage{biblatex}")
    assert "ieee.bbx" in paths
    assert "ieee.cbx" in paths
    assert "biblatex.sty" in paths


def test_biblatex_bibstyle_and_citestyle():
    paths = _paths(r"\usepackage[backend=biber, bibstyle=alpha, citestyle=numeric]{biblatex}")
    assert "alpha.bbx" in paths
    assert "numeric.cbx" in paths
    assert "alpha.cbx" not in paths


def test_listing_and_minted_sources_are_used_as_is():
    source = "\\lstinputlisting[language=Python]{code/a.py}\n\\verbatiminput{log.txt}\n\\inputminted[linenos]{rust}{src/main.rs}"
    assert _paths(source) == ["code/a.py", "log.txt", "src/main.rs"]


def test_import_and_subfile():
    source = "\\import{chapters/}{one}\n\\subimport{parts}{two.tex}\n\\subfile{appendix}"
    dependencies = extract_static_dependencies(source)
    assert Dependency("chapters/one.tex", True) in dependencies
    assert Dependency("parts/two.tex", True) in dependencies
    assert Dependency("appendix.tex", True) in dependencies


def test_base_path_is_joined_and_normalized():
    assert _paths(r"\input{../common/preamble}", "paper/sections") == ["paper/common/preamble.tex"]
    assert _paths(r"\input{./intro}", "paper") == ["paper/intro.tex"]


@pytest.mark.parametrize(
    "source",
    [r"\input{/etc/passwd}", r"\includegraphics{https://example.com/a.png}", r"\input{C:/x}", r"\input{ }"],
)
def test_absolute_url_and_empty_candidates_are_dropped(source):
    assert _paths(source) == []


def test_quotes_are_trimmed():
    assert _paths('\\input{"my file"}') == ["my file.tex"]


def test_commented_macros_are_ignored_but_escaped_percent_is_kept():
    source = "% \\input{hidden}\n50\\% of \\input{shown} % \\input{alsohidden}"
    assert _paths(source) == ["shown.tex"]
    assert strip_comments("a\\%b % c") == "a\\%b "


def test_similar_macro_names_do_not_collide():
    assert _paths(r"\inputminted{python}{a.py}") == ["a.py"]
    assert _paths(r"\includeonly{ch1}") == []


def test_duplicates_are_removed():
    assert _paths("\\input{a}\n\\input{a.tex}\n\\include{a}") == ["a.tex"]


def test_every_rule_has_a_name_and_pattern():
    assert len({rule.name for rule in MACRO_RULES}) == len(MACRO_RULES)


macro = st.sampled_from(
    [
        "\\input{{{}}}",
        "\\include{{{}}}",
        "\\includegraphics{{{}}}",
        "\\bibliography{{{}}}",
        "\\usepackage{{{}}}",
        "\\subfile{{{}}}",
    ]
)
name = st.text(alphabet="abcdefghij/._-", min_size=1, max_size=12)


@given(lines=st.lists(st.tuples(macro, name), max_size=8), base=st.sampled_from(["", "docs", "a/b"]))
def test_extraction_is_idempotent_and_order_independent_as_a_set(lines, base):
    source = "\n".join(template.format(value) for template, value in lines)
    reversed_source = "\n".join(template.format(value) for template, value in reversed(lines))

    first = extract_static_dependencies(source, base)
    second = extract_static_dependencies(source, base)

    assert first == second
    assert {dependency.path for dependency in first} == {
        dependency.path for dependency in extract_static_dependencies(reversed_source, base)
    }
    assert len({dependency.path for dependency in first}) == len(first)
