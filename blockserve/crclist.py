"""CRC-32 lists covering images in hash blocks of 16 MiB."""

from __future__ import annotations

import logging
import os
import struct
import zlib
from collections.abc import Iterable, Sequence
from typing import BinaryIO, Union

logger = logging.getLogger(__name__)

DNBD3_BLOCK_SIZE = 4096
HASH_BLOCK_SIZE = 1 << 24
_CHUNK = 512 * 1024

FileLike = Union[int, BinaryIO]


def hash_blocks(size: int) -> int:
    """Number of hash blocks needed to cover ``size`` bytes."""
    return (size + HASH_BLOCK_SIZE - 1) // HASH_BLOCK_SIZE


def _read_at(file: FileLike, size: int, pos: int) -> bytes:
    if isinstance(file, int):
        return os.pread(file, size, pos)
    file.seek(pos)
    return file.read(size)


def block_crc32(file: FileLike, block: int, real_size: int) -> int:
    """CRC-32 of one hash block of a file of ``real_size`` bytes.

    ``file`` is a file descriptor or a binary file object. The data is
    padded with zeros up to the next 4 KiB border. Raises
    :class:`ValueError` for a block past the end and :class:`OSError`
    on a read error.
    """
    start = block * HASH_BLOCK_SIZE
    if block < 0 or start >= real_size:
        raise ValueError(f"hash block {block} is outside of a {real_size} byte file")
    from_file = min(HASH_BLOCK_SIZE, real_size - start)
    virtual_size = (real_size + DNBD3_BLOCK_SIZE - 1) & ~(DNBD3_BLOCK_SIZE - 1)
    virtual_from_file = min(HASH_BLOCK_SIZE, virtual_size - start)
    crc = 0
    done = 0
    while done < from_file:
        chunk = _read_at(file, min(_CHUNK, from_file - done), start + done)
        if not chunk:
            raise OSError(f"unexpected end of file reading hash block {block}")
        crc = zlib.crc32(chunk, crc)
        done += len(chunk)
    if virtual_from_file > from_file:
        crc = zlib.crc32(bytes(virtual_from_file - from_file), crc)
    return crc


def master_crc(crc_list: Sequence[int]) -> int:
    """CRC-32 over the little endian encoding of a CRC list."""
    return zlib.crc32(struct.pack(f"<{len(crc_list)}I", *crc_list))


def load_crc_list(image_path: str, virtual_size: int) -> tuple[int, list[int]] | None:
    """Read ``<image_path>.crc``; returns the master CRC and the list.

    Returns None if the file is missing, too short or corrupted.
    """
    count = hash_blocks(virtual_size)
    crc_path = image_path + ".crc"
    try:
        with open(crc_path, "rb") as stream:
            data = stream.read()
    except OSError:
        return None
    if len(data) < (count + 1) * 4:
        logger.warning("Ignoring crc32 list for '%s' as it is too short", image_path)
        return None
    (master,) = struct.unpack_from("<I", data, 0)
    crcs = list(struct.unpack_from(f"<{count}I", data, 4))
    if master_crc(crcs) != master:
        logger.warning(
            "CRC-32 of CRC-32 list mismatch. CRC-32 list of '%s' might be corrupted.",
            image_path,
        )
        return None
    return master, crcs


def generate_crc_file(image_path: str) -> tuple[int, list[int]]:
    """Write ``<image_path>.crc`` and return the master CRC and the list.

    Raises :class:`ValueError` for an empty image and
    :class:`FileExistsError` if the CRC file already exists.
    """
    with open(image_path, "rb") as image:
        size = image.seek(0, os.SEEK_END)
        if size <= 0:
            raise ValueError(f"image '{image_path}' is empty")
        crc_path = image_path + ".crc"
        with open(crc_path, "xb") as out:
            out.write(bytes(4))  # master CRC is not known yet
            crcs = []
            for block in range(hash_blocks(size)):
                crc = block_crc32(image, block, size)
                out.write(struct.pack("<I", crc))
                crcs.append(crc)
            master = master_crc(crcs)
            out.seek(0)
            out.write(struct.pack("<I", master))
    logger.info("CRC-32 file successfully generated.")
    return master, crcs


def check_blocks_crc32(
    file: FileLike, crc_list: Sequence[int], blocks: Iterable[int], real_size: int
) -> bool:
    """True if every listed hash block matches its CRC in ``crc_list``."""
    for block in blocks:
        try:
            crc = block_crc32(file, block, real_size)
        except OSError as exc:
            logger.warning("CRC: Read error: %s", exc)
            return False
        if crc != crc_list[block]:
            logger.warning("Block %d is %x, should be %x", block, crc, crc_list[block])
            return False
    return True