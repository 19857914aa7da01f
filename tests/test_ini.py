import pytest

from blockserve.ini import MAX_SECTION, parse_ini, parse_ini_lines


def collect(lines):
    seen = []

    def handler(section, name, value):
        seen.append((section, name, value))

    error = parse_ini_lines(lines, handler)
    return seen, error


def test_basic_section_and_values():
    seen, error = collect(["[main]\n", "alpha = one\n", "beta=two\n"])
    assert error == 0
    assert seen == [("main", "alpha", "one"), ("main", "beta", "two")]


def test_setting_before_section_has_empty_section():
    seen, error = collect(["key=value\n", "[s]\n", "other=x\n"])
    assert error == 0
    assert seen == [("", "key", "value"), ("s", "other", "x")]


def test_colon_separator():
    seen, _ = collect(["[s]\n", "name: val\n"])
    assert seen == [("s", "name", "val")]


def test_inline_comment_needs_whitespace():
    seen, _ = collect(["[s]\n", "a = b ; comment\n", "c=d;e\n"])
    assert seen == [("s", "a", "b"), ("s", "c", "d;e")]


def test_comment_lines_are_ignored():
    seen, error = collect(["; comment\n", "# also\n", "\n", "[s]\n", "k=v\n"])
    assert error == 0
    assert seen == [("s", "k", "v")]


def test_continuation_line_repeats_name():
    seen, _ = collect(["[s]\n", "list=first\n", "   second\n"])
    assert seen == [("s", "list", "first"), ("s", "list", "second")]


def test_missing_bracket_reports_line_and_keeps_parsing():
    seen, error = collect(["[ok]\n", "a=1\n", "[broken\n", "b=2\n"])
    assert error == 3
    assert seen == [("ok", "a", "1"), ("ok", "b", "2")]


def test_line_without_separator_is_an_error():
    seen, error = collect(["[s]\n", "garbage\n", "k=v\n"])
    assert error == 2
    assert seen == [("s", "k", "v")]


def test_handler_returning_false_marks_error():
    lines = ["[s]\n", "good=1\n", "bad=2\n", "worse=3\n"]

    def handler(section, name, value):
        return name == "good"

    assert parse_ini_lines(lines, handler) == 3


def test_nested_brackets_in_section_name():
    seen, _ = collect(["[a[b]c]\n", "k=v\n"])
    assert seen == [("a[b]c", "k", "v")]


def test_section_name_is_truncated():
    name = "x" * 60
    seen, _ = collect([f"[{name}]\n", "k=v\n"])
    assert seen[0][0] == name[: MAX_SECTION - 1]


def test_bom_is_skipped_on_first_line():
    seen, error = collect(["\ufeff[s]\n", "k=v\n"])
    assert error == 0
    assert seen == [("s", "k", "v")]


def test_parse_ini_file(tmp_path):
    path = tmp_path / "test.ini"
    path.write_text("[host]\ncomment = hello world\n", encoding="utf-8")
    seen = []
    error = parse_ini(str(path), lambda s, k, v: seen.append((s, k, v)))
    assert error == 0
    assert seen == [("host", "comment", "hello world")]


def test_parse_ini_missing_file(tmp_path):
    with pytest.raises(OSError):
        parse_ini(str(tmp_path / "nope.ini"), lambda s, k, v: None)