"""Image files on disk: naming, creation, metadata and revision lookup."""

from __future__ import annotations

import contextlib
import glob
import logging
import os
import re
import time
from typing import NamedTuple

from .cachemap import map_bytes
from .crclist import DNBD3_BLOCK_SIZE
from .fileutil import alloc_file, mkdir_p, set_size

logger = logging.getLogger(__name__)

_FORBIDDEN = (".crc", ".map", ".meta")
_DIGITS = "0123456789"
_ALL_DIGITS = re.compile(r"[0-9]+")
_ATOL = re.compile(r"[ \t\n\v\f\r]*([+-]?[0-9]+)")
_META_MAX = 199
MAX_REVISION = 65535


class ImagePath(NamedTuple):
    name: str
    revision: int


class ImageMeta(NamedTuple):
    atime_offset: int
    accessed: bool


def is_forbidden_extension(name: str) -> bool:
    """True if ``name`` ends in one of the metadata file extensions."""
    return name.endswith(_FORBIDDEN)


def parse_image_path(base: str, path: str, vmdk_legacy: bool = False) -> ImagePath:
    """Derive the public name and revision from an image path below ``base``.

    ``<base>/dir/file.r5`` becomes ``("dir/file", 5)``. In legacy mode a
    file without a revision suffix gets revision 1 and keeps its full name.
    Raises :class:`ValueError` if no valid revision can be determined.
    """
    prefix = base.rstrip("/") + "/"
    if not path.startswith(prefix) or len(path) <= len(prefix) or path[len(prefix)] == "/":
        raise ValueError(f"'{path}' is not below '{base}'")
    relative = path[len(prefix) :]
    slash = relative.rfind("/")
    directory, file_name = relative[: slash + 1], relative[slash + 1 :]
    revision = -1
    name = directory
    last = len(file_name) - 1
    index = last
    while index > 1 and file_name[index] in _DIGITS:
        index -= 1
    if index != last and file_name[index] == "r" and file_name[index - 1] == ".":
        revision = int(file_name[index + 1 :])
        name = directory + file_name[: index - 1]
    if vmdk_legacy and revision == -1:
        name = directory + file_name
        revision = 1
    if not 0 < revision <= MAX_REVISION:
        raise ValueError(f"image '{path}' has invalid revision ID {revision}")
    return ImagePath(name, revision)


def create_image(
    base: str,
    name: str,
    revision: int,
    size: int,
    sparse: bool = False,
    ignore_alloc_errors: bool = False,
) -> str:
    """Create an empty image file and its cache map; returns the image path.

    Raises :class:`ValueError` for a bad revision or size and
    :class:`OSError` if the files cannot be created; partial files are removed.
    """
    if revision <= 0:
        raise ValueError(f"revision id invalid: {revision}")
    if size < DNBD3_BLOCK_SIZE:
        raise ValueError(f"image size {size} is smaller than one block")
    path = f"{base}/{name}.r{revision}"
    map_path = path + ".map"
    size = (size + DNBD3_BLOCK_SIZE - 1) & ~(DNBD3_BLOCK_SIZE - 1)
    map_size = map_bytes(size)
    flags = os.O_RDWR | os.O_TRUNC | os.O_CREAT
    fds: list[int] = []
    try:
        slash = name.rfind("/")
        if slash >= 0:
            mkdir_p(f"{base}/{name[:slash]}")
        image_fd = os.open(path, flags, 0o644)
        fds.append(image_fd)
        map_fd = os.open(map_path, flags, 0o644)
        fds.append(map_fd)
        if not alloc_file(map_fd, 0, map_size):
            try:
                set_size(map_fd, map_size)
            except OSError as exc:
                logger.debug("Could not allocate %d bytes for %s: %s", map_size, map_path, exc)
        fallback = False
        if not sparse and not alloc_file(image_fd, 0, size):
            logger.error("Could not allocate %d bytes for %s", size, path)
            if not ignore_alloc_errors:
                raise OSError(f"could not preallocate {size} bytes for {path}")
            fallback = True
        if sparse or fallback:
            set_size(image_fd, size)
    except OSError:
        for leftover in (path, map_path):
            with contextlib.suppress(OSError):
                os.remove(leftover)
        raise
    finally:
        for fd in fds:
            os.close(fd)
    return path


def _atol(text: str) -> int:
    match = _ATOL.match(text)
    return int(match.group(1)) if match else 0


def load_image_meta(path: str) -> ImageMeta:
    """Read ``<path>.meta`` for the last access time of an image.

    Returns the access time as a non-positive offset in seconds from now,
    and whether the image should be treated as accessed (no metadata found,
    in which case the file's modification time is used).
    """
    now = int(time.time())
    offset: int | None = None
    try:
        with open(path + ".meta", "rb") as stream:
            data = stream.read(_META_MAX)
    except OSError:
        data = b""
    text = data.decode("latin-1")
    pos = text.find("atime=")
    if pos >= 0:
        offset = _atol(text[pos + 6 :]) - now
    accessed = False
    if offset is None:
        try:
            offset = int(os.stat(path).st_mtime) - now
        except OSError:
            offset = 0
        accessed = True
    return ImageMeta(min(offset, 0), accessed)


def save_image_meta(path: str, atime: float) -> None:
    """Write the wall clock access time ``atime`` to ``<path>.meta``.

    Raises :class:`OSError` if the file cannot be written.
    """
    with open(path + ".meta", "w", encoding="ascii") as stream:
        stream.write(f"[main]\natime={int(atime)}\n")


def find_latest_revision(base: str, name: str) -> tuple[int, str] | None:
    """Highest revision of ``name`` found as ``<base>/<name>.r<N>``, with its path."""
    best = 0
    best_path = ""
    for candidate in glob.glob(glob.escape(f"{base}/{name}") + ".r*"):
        if os.path.isdir(candidate):
            continue
        pos = candidate.rfind("r")
        if pos <= 0 or candidate[pos - 1] != ".":
            continue
        digits = candidate[pos + 1 :]
        if not _ALL_DIGITS.fullmatch(digits):
            continue
        value = int(digits)
        if value > best:
            best = value
            best_path = candidate
    if 0 < best <= MAX_REVISION:
        return best, best_path
    return None