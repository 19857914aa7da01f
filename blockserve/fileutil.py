"""Small file system helpers."""

from __future__ import annotations

import os
from collections.abc import Iterator
from typing import NamedTuple

from .hosts import trim_right

_LINE_LIMIT = 999
_MAX_ITEMS = 20


class DiskSpace(NamedTuple):
    total: int
    available: int


def is_readable(path: str) -> bool:
    """True if ``path`` can be opened for reading."""
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return False
    os.close(fd)
    return True


def is_writable(path: str) -> bool:
    """True if ``path`` exists and is writable, or could be created.

    A file created only for the test is removed again.
    """
    try:
        fd = os.open(path, os.O_WRONLY)
    except OSError:
        pass
    else:
        os.close(fd)
        return True
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o600)
    except OSError:
        return False
    os.close(fd)
    os.remove(path)
    return True


def mkdir_p(path: str) -> None:
    """Create ``path`` and all its parents; existing entries are fine.

    Raises :class:`OSError` if a component cannot be created.
    """
    if not path:
        return
    parts = path.split("/")
    for count in range(1, len(parts) + 1):
        prefix = "/".join(parts[:count])
        if not prefix:
            continue
        try:
            os.mkdir(prefix, 0o755)
        except FileExistsError:
            pass


def alloc_file(fd: int, offset: int, size: int) -> bool:
    """Try to preallocate ``size`` bytes at ``offset``; True on success."""
    fallocate = getattr(os, "posix_fallocate", None)
    if fallocate is None:
        return False
    try:
        fallocate(fd, offset, size)
    except OSError:
        return False
    return True


def set_size(fd: int, size: int) -> None:
    """Give the file an apparent size of ``size`` bytes.

    Falls back to rewriting the last byte if truncation is not possible.
    Raises :class:`OSError` if both fail.
    """
    try:
        os.ftruncate(fd, size)
        return
    except OSError:
        pass
    try:
        byte = os.pread(fd, 1, size - 1) or b"\0"
    except OSError:
        byte = b"\0"
    if os.pwrite(fd, byte[:1], size - 1) != 1:
        raise OSError(f"could not set file size to {size}")


def free_disk_space(path: str) -> DiskSpace:
    """Total and available bytes of the file system holding ``path``."""
    info = os.statvfs(path)
    return DiskSpace(info.f_blocks * info.f_frsize, info.f_bavail * info.f_frsize)


def last_modification(path: str) -> int:
    """Modification time of ``path`` in seconds, or 0 if it cannot be read."""
    try:
        return int(os.stat(path).st_mtime)
    except OSError:
        return 0


def _split_fields(line: str, max_fields: int) -> list[str]:
    items: list[str] = []
    pos = 0
    length = len(line)
    while pos < length and len(items) < _MAX_ITEMS:
        while pos < length and line[pos] in " \t":
            pos += 1
        if pos >= length or line[pos] in "\r\n":
            break
        if len(items) + 1 >= max_fields:
            items.append(trim_right(line[pos:]))
            break
        end = pos
        while end < length and line[end] not in " \t\r\n":
            end += 1
        items.append(line[pos:end])
        pos = end + 1
    return items


def _physical_lines(stream) -> Iterator[str]:
    for line in stream:
        while len(line) > _LINE_LIMIT:
            yield line[:_LINE_LIMIT]
            line = line[_LINE_LIMIT:]
        if line:
            yield line


def iter_line_fields(path: str, min_fields: int, max_fields: int) -> Iterator[list[str]]:
    """Yield the whitespace separated fields of each line of ``path``.

    The last of ``max_fields`` fields takes the rest of the line. Lines with
    fewer than ``min_fields`` fields are skipped. Raises :class:`OSError`
    when iteration starts if the file cannot be opened.
    """
    with open(path, encoding="utf-8", errors="surrogateescape", newline="\n") as stream:
        for line in _physical_lines(stream):
            items = _split_fields(line, max_fields)
            if len(items) >= min_fields:
                yield items