"""Cache maps: one bit per 4 KiB block telling whether it is stored locally."""

from __future__ import annotations

import logging
import os
import threading

from .crclist import DNBD3_BLOCK_SIZE, HASH_BLOCK_SIZE

logger = logging.getLogger(__name__)

_BLOCK_MASK = DNBD3_BLOCK_SIZE - 1
# One byte of the map covers 8 blocks of 4 KiB, i.e. 32 KiB
_BYTE_SHIFT = 15
_BLOCK_SHIFT = 12


def map_bytes(size: int) -> int:
    """Number of map bytes needed for an image of ``size`` bytes."""
    return (size + (1 << _BYTE_SHIFT) - 1) >> _BYTE_SHIFT


def _masks(start: int, end: int) -> tuple[int, int, int, int]:
    first = start >> _BYTE_SHIFT
    last = (end - 1) >> _BYTE_SHIFT
    first_mask = (0xFF << ((start >> _BLOCK_SHIFT) & 7)) & 0xFF
    last_mask = ~(0xFF << ((((end - 1) >> _BLOCK_SHIFT) & 7) + 1)) & 0xFF
    return first, last, first_mask, last_mask


class CacheMap:
    """Bitmap of the locally cached 4 KiB blocks of an image."""

    def __init__(self, virtual_size: int, complete: bool = False) -> None:
        self.virtual_size = virtual_size
        fill = b"\xff" if complete else b"\0"
        self._map = bytearray(fill * map_bytes(virtual_size))
        self._lock = threading.Lock()
        self.dirty = False
        self.unchanged = False

    @classmethod
    def from_file(cls, path: str, virtual_size: int) -> CacheMap:
        """Read a map from ``path``; a short file leaves the rest uncached.

        Raises :class:`OSError` if the file cannot be opened.
        """
        cache = cls(virtual_size)
        expected = len(cache._map)
        with open(path, "rb") as stream:
            data = stream.read(expected)
        if len(data) != expected:
            logger.warning(
                "Could only read %d of expected %d bytes of cache map '%s'",
                len(data),
                expected,
                path,
            )
        cache._map[: len(data)] = data
        return cache

    def __bytes__(self) -> bytes:
        with self._lock:
            return bytes(self._map)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CacheMap):
            return NotImplemented
        return self.virtual_size == other.virtual_size and bytes(self) == bytes(other)

    __hash__ = None  # type: ignore[assignment]

    def update(self, start: int, end: int, set_cached: bool) -> bool:
        """Mark bytes ``start`` (inclusive) to ``end`` (exclusive) as cached or not.

        When setting, the range shrinks to whole blocks; when clearing, it
        grows to whole blocks. Returns True if a block that was not cached
        before became cached. Raises :class:`ValueError` for a bad range.
        """
        if start > end or end > self.virtual_size:
            raise ValueError(f"invalid range {start}-{end} for {self.virtual_size} bytes")
        if set_cached:
            end &= ~_BLOCK_MASK
            start = (start + _BLOCK_MASK) & ~_BLOCK_MASK
        else:
            start &= ~_BLOCK_MASK
            end = (end + _BLOCK_MASK) & ~_BLOCK_MASK
        if start >= end:
            return False
        first, last, first_mask, last_mask = _masks(start, end)
        new_blocks = False
        cmap = self._map
        with self._lock:
            if first == last:
                bits = first_mask & last_mask
                if set_cached:
                    old = cmap[first]
                    cmap[first] = old | bits
                    new_blocks = (old | bits) != old
                else:
                    cmap[first] &= ~bits & 0xFF
            else:
                middle = last - first - 1
                if set_cached:
                    old_first, old_last = cmap[first], cmap[last]
                    new_blocks = (old_first | first_mask) != old_first or (
                        old_last | last_mask
                    ) != old_last
                    cmap[first] = old_first | first_mask
                    cmap[last] = old_last | last_mask
                    if cmap[first + 1 : last].count(0xFF) != middle:
                        new_blocks = True
                    cmap[first + 1 : last] = b"\xff" * middle
                else:
                    cmap[first] &= ~first_mask & 0xFF
                    cmap[last] &= ~last_mask & 0xFF
                    cmap[first + 1 : last] = bytes(middle)
            if not set_cached:
                self.dirty = True
        return new_blocks

    def is_range_cached(self, start: int, end: int) -> bool:
        """True if every block of the 4 KiB aligned range is cached."""
        if start >= end:
            return True
        first, last, first_mask, last_mask = _masks(start, end)
        with self._lock:
            cmap = self._map
            if first == last:
                bits = first_mask & last_mask
                return (cmap[first] & bits) == bits
            if (cmap[first] & first_mask) != first_mask:
                return False
            if (cmap[last] & last_mask) != last_mask:
                return False
            middle = cmap[first + 1 : last]
            return middle.count(0xFF) == len(middle)

    def is_complete(self) -> bool:
        """True if every block of the image is cached."""
        if self.virtual_size == 0:
            return False
        with self._lock:
            cmap = self._map
            if not cmap:
                return False
            head = cmap[:-1]
            if head.count(0xFF) != len(head):
                return False
            blocks_in_last = (self.virtual_size >> _BLOCK_SHIFT) & 7
            last_mask = 0xFF if blocks_in_last == 0 else (1 << blocks_in_last) - 1
            return (cmap[-1] & last_mask) == last_mask

    def is_hash_block_complete(self, block: int, real_size: int) -> bool:
        """True if every block of 16 MiB hash block ``block`` is cached."""
        start = block * HASH_BLOCK_SIZE
        with self._lock:
            cmap = self._map
            if start + HASH_BLOCK_SIZE <= real_size:
                first = start // (DNBD3_BLOCK_SIZE * 8)
                count = HASH_BLOCK_SIZE // (DNBD3_BLOCK_SIZE * 8)
                chunk = cmap[first : first + count]
                return len(chunk) == count and chunk.count(0xFF) == count
            for pos in range(start, real_size, DNBD3_BLOCK_SIZE):
                index = pos >> _BYTE_SHIFT
                bit = 1 << ((pos >> _BLOCK_SHIFT) & 7)
                if index >= len(cmap) or not cmap[index] & bit:
                    return False
            return True

    def completeness(self) -> int:
        """Rough percentage of cached data: full map bytes count 100, partial 50."""
        with self._lock:
            if not self._map:
                return 0
            total = 0
            for value in self._map:
                if value == 0xFF:
                    total += 100
                elif value:
                    total += 50
            return total // len(self._map)

    def intersect(self, other: CacheMap) -> None:
        """Keep only blocks that are cached in both maps."""
        theirs = bytes(other)
        with self._lock:
            for index, value in enumerate(theirs[: len(self._map)]):
                self._map[index] &= value
            if len(theirs) < len(self._map):
                self._map[len(theirs) :] = bytes(len(self._map) - len(theirs))

    def save(self, path: str) -> None:
        """Write the map to ``path`` and flush it to disk.

        Raises :class:`OSError` if the file cannot be written.
        """
        data = bytes(self)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o644)
        with os.fdopen(fd, "wb") as stream:
            stream.write(data)
            stream.flush()
            try:
                os.fsync(stream.fileno())
            except OSError as exc:
                logger.warning("fsync() on image map %s failed: %s", path, exc)