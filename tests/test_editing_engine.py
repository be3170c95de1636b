import pytest

from codeagent.core.editing_engine import EditingEngine, EditingError
from codeagent.core.errors import EditConflictError


def test_exact_replace_first_occurrence_only():
    engine = EditingEngine()
    result = engine.replace_with_fallback("foo bar foo", old="foo", new="baz")

    assert result.content == "baz bar foo"
    assert result.details["match"] == "exact"
    assert result.details["occurrences"] == 2


def test_empty_search_string_is_rejected():
    engine = EditingEngine()
    with pytest.raises(EditingError):
        engine.replace_with_fallback("abc", old="", new="x")


def test_fuzzy_match_ignores_case_and_whitespace_and_replaces_original_span():
    engine = EditingEngine()
    content = "def foo():\n    return  1\n"

    result = engine.replace_with_fallback(content, old="RETURN 1", new="return 2")

    assert result.details["match"] == "fuzzy"
    assert result.details["matched_text"] == "return  1"
    assert result.content == "def foo():\n    return 2\n"


def test_fuzzy_match_spans_lines():
    engine = EditingEngine()
    content = "a = 1\nif a:\n        print(a)\nb = 2\n"

    result = engine.replace_with_fallback(content, old="if a:\n    print(a)", new="pass")

    assert result.content == "a = 1\npass\nb = 2\n"


def test_exact_match_wins_over_fuzzy():
    engine = EditingEngine()
    content = "Hello  World\nhello world\n"

    result = engine.replace_with_fallback(content, old="hello world", new="x")

    assert result.details["match"] == "exact"
    assert result.content == "Hello  World\nx\n"


def test_dissimilar_search_raises_conflict_with_preview():
    engine = EditingEngine()

    with pytest.raises(EditConflictError) as excinfo:
        engine.replace_with_fallback("hello world", old="goodbye", new="x")

    err = excinfo.value
    assert err.preview == "hello world"
    assert err.searched == "goodbye"
    assert "hello world" in str(err)


def test_conflict_preview_is_truncated():
    engine = EditingEngine()
    content = "x" * 2000

    with pytest.raises(EditConflictError) as excinfo:
        engine.replace_with_fallback(content, old="missing", new="y")

    assert excinfo.value.preview == "x" * 500 + "..."


def test_diff_counts_single_changed_line():
    engine = EditingEngine()
    diff = engine.compute_diff("hello", "hello world")

    assert diff.added == 1
    assert diff.removed == 1
    assert diff.diff.splitlines() == ["- hello", "+ hello world"]


def test_diff_includes_bounded_context():
    engine = EditingEngine()
    old = "\n".join(f"line{i}" for i in range(20))
    new = old.replace("line10", "changed")

    lines = engine.compute_diff(old, new).diff.splitlines()

    assert lines == [
        "  line5", "  line6", "  line7", "  line8", "  line9",
        "- line10", "+ changed",
        "  line11", "  line12", "  line13", "  line14", "  line15",
    ]


def test_distant_changes_are_separated_by_ellipsis():
    engine = EditingEngine()
    old_lines = [f"line{i}" for i in range(40)]
    new_lines = list(old_lines)
    new_lines[0] = "first"
    new_lines[30] = "second"

    diff = engine.compute_diff("\n".join(old_lines), "\n".join(new_lines))

    assert diff.added == 2 and diff.removed == 2
    assert "..." in diff.diff.splitlines()


def test_appended_lines_count_as_added_only():
    engine = EditingEngine()
    diff = engine.compute_diff("a\nb", "a\nb\nc\nd")

    assert diff.added == 2
    assert diff.removed == 0


def test_diff_output_is_capped():
    engine = EditingEngine()
    old = "\n".join(f"old{i}" for i in range(50))
    new = "\n".join(f"new{i}" for i in range(50))

    lines = engine.compute_diff(old, new).diff.splitlines()

    assert len(lines) == 32
    assert lines[-2:] == ["...", "(70 more lines)"]


def test_new_file_diff_previews_first_lines():
    engine = EditingEngine()
    content = "".join(f"l{i}\n" for i in range(15))

    diff = engine.new_file_diff(content)

    assert diff.added == 15
    assert diff.removed == 0
    lines = diff.diff.splitlines()
    assert lines[0] == "+ l0"
    assert lines[9] == "+ l9"
    assert lines[-1] == "(5 more lines)"


def test_new_file_diff_single_line_without_newline():
    diff = EditingEngine().new_file_diff("hello")
    assert (diff.added, diff.removed) == (1, 0)
