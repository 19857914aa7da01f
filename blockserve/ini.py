"""Parser for the simple INI files used by the server configuration.

Sections are written as ``[name]``, settings as ``name=value`` or
``name:value``. Lines starting with ``;`` or ``#`` are comments, and a
``;`` preceded by whitespace starts a comment after a value. Indented
lines following a setting continue that setting's value.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator

Handler = Callable[[str, str, str], object]

MAX_LINE = 200
MAX_SECTION = 50
MAX_NAME = 50

_SPACE = " \t\n\v\f\r"
_BOM = "\ufeff"


def _find_char_or_comment(text: str, char: str | None, start: int = 0) -> int:
    """Index of the first ``char`` or whitespace-prefixed ``;``, else ``len(text)``."""
    was_space = False
    index = start
    while index < len(text):
        current = text[index]
        if current == char or (was_space and current == ";"):
            break
        was_space = current in _SPACE
        index += 1
    return index


def _physical_lines(lines: Iterable[str]) -> Iterator[str]:
    """Split overly long lines into chunks the way a fixed line buffer would."""
    limit = MAX_LINE - 1
    for line in lines:
        while len(line) > limit:
            yield line[:limit]
            line = line[limit:]
        if line:
            yield line


def parse_ini_lines(lines: Iterable[str], handler: Handler) -> int:
    """Parse INI lines, calling ``handler(section, name, value)`` for each setting.

    Parsing does not stop at a malformed line. A handler that returns
    ``False`` marks its line as malformed. Returns the number of the first
    malformed line, or 0 if there was none.
    """
    section = ""
    prev_name = ""
    error = 0

    for lineno, raw in enumerate(_physical_lines(lines), 1):
        offset = 1 if lineno == 1 and raw.startswith(_BOM) else 0
        stripped = raw[offset:].rstrip(_SPACE)
        text = stripped.lstrip(_SPACE)
        indented = offset > 0 or len(text) < len(stripped)

        if not text or text[0] in ";#":
            continue

        if prev_name and indented:
            if handler(section, prev_name, text) is False and not error:
                error = lineno
            continue

        if text[0] == "[":
            depth = 0
            section_start = 0
            for index in range(1, len(text)):
                if text[index] == "[":
                    depth += 1
                elif text[index] == "]":
                    depth -= 1
                if depth < 0:
                    section_start = index - 1
                    break
            end = _find_char_or_comment(text, "]", section_start + 1)
            if end < len(text) and text[end] == "]":
                section = text[1:end][: MAX_SECTION - 1]
                prev_name = ""
            elif not error:
                error = lineno
            continue

        end = _find_char_or_comment(text, "=")
        if end >= len(text) or text[end] != "=":
            end = _find_char_or_comment(text, ":")
        if end < len(text) and text[end] in "=:":
            name = text[:end].rstrip(_SPACE)
            value = text[end + 1 :].lstrip(_SPACE)
            comment = _find_char_or_comment(value, None)
            if comment < len(value) and value[comment] == ";":
                value = value[:comment]
            value = value.rstrip(_SPACE)
            prev_name = name[: MAX_NAME - 1]
            if handler(section, name, value) is False and not error:
                error = lineno
        elif not error:
            error = lineno

    return error


def parse_ini(path: str, handler: Handler) -> int:
    """Parse the INI file at ``path``; see :func:`parse_ini_lines`.

    Raises :class:`OSError` if the file cannot be opened.
    """
    with open(path, encoding="utf-8", errors="surrogateescape", newline="\n") as stream:
        return parse_ini_lines(stream, handler)