import os
import time

import pytest

from blockserve.cachemap import map_bytes
from blockserve.crclist import DNBD3_BLOCK_SIZE
from blockserve.imagefiles import (
    create_image,
    find_latest_revision,
    is_forbidden_extension,
    load_image_meta,
    parse_image_path,
    save_image_meta,
)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("image.r1.crc", True),
        ("image.r1.map", True),
        ("image.r1.meta", True),
        (".map", True),
        ("image.r1", False),
        ("map", False),
        ("image.mapx", False),
    ],
)
def test_forbidden_extension(name, expected):
    assert is_forbidden_extension(name) is expected


def test_parse_path_with_revision():
    assert parse_image_path("/base", "/base/dir/img.r5") == ("dir/img", 5)
    assert parse_image_path("/base/", "/base/img.vmdk.r12", False) == ("img.vmdk", 12)


def test_parse_path_without_revision():
    with pytest.raises(ValueError):
        parse_image_path("/base", "/base/dir/img.vmdk", False)
    assert parse_image_path("/base", "/base/dir/img.vmdk", True) == ("dir/img.vmdk", 1)


@pytest.mark.parametrize("path", ["/base/img.r0", "/base/img.r65536"])
def test_parse_path_rejects_out_of_range_revision(path):
    with pytest.raises(ValueError):
        parse_image_path("/base", path, True)


def test_parse_path_outside_base():
    with pytest.raises(ValueError):
        parse_image_path("/base", "/other/img.r1")


def test_create_sparse_image(tmp_path):
    base = str(tmp_path)
    size = 3 * DNBD3_BLOCK_SIZE + 10
    path = create_image(base, "dir/img", 3, size, sparse=True)
    assert path == f"{base}/dir/img.r3"
    aligned = 4 * DNBD3_BLOCK_SIZE
    assert os.path.getsize(path) == aligned
    assert os.path.getsize(path + ".map") == map_bytes(aligned)
    assert parse_image_path(base, path) == ("dir/img", 3)


def test_create_preallocated_image(tmp_path):
    base = str(tmp_path)
    path = create_image(base, "img", 1, 8 * DNBD3_BLOCK_SIZE, ignore_alloc_errors=True)
    assert os.path.getsize(path) == 8 * DNBD3_BLOCK_SIZE


def test_create_rejects_bad_arguments(tmp_path):
    with pytest.raises(ValueError):
        create_image(str(tmp_path), "img", 0, 8 * DNBD3_BLOCK_SIZE)
    with pytest.raises(ValueError):
        create_image(str(tmp_path), "img", 1, DNBD3_BLOCK_SIZE - 1)


def test_create_in_missing_base_cleans_up(tmp_path):
    base = str(tmp_path / "file")
    (tmp_path / "file").write_bytes(b"x")
    with pytest.raises(OSError):
        create_image(base, "img", 1, DNBD3_BLOCK_SIZE, sparse=True)
    assert sorted(os.listdir(tmp_path)) == ["file"]


def test_meta_round_trip(tmp_path):
    path = str(tmp_path / "img.r1")
    save_image_meta(path, time.time() - 100)
    meta = load_image_meta(path)
    assert -102 <= meta.atime_offset <= -98
    assert meta.accessed is False


def test_meta_in_future_is_clamped(tmp_path):
    path = str(tmp_path / "img.r1")
    save_image_meta(path, time.time() + 1000)
    assert load_image_meta(path).atime_offset == 0


def test_meta_missing_uses_mtime(tmp_path):
    image = tmp_path / "img.r1"
    image.write_bytes(b"data")
    old = time.time() - 500
    os.utime(image, (old, old))
    meta = load_image_meta(str(image))
    assert meta.accessed is True
    assert -502 <= meta.atime_offset <= -498


def test_meta_missing_everything(tmp_path):
    meta = load_image_meta(str(tmp_path / "nothing"))
    assert meta.accessed is True
    assert meta.atime_offset == 0


def test_find_latest_revision(tmp_path):
    for name in ("a.r1", "a.r3", "a.r10x", "b.r9"):
        (tmp_path / name).write_bytes(b"x")
    (tmp_path / "a.r20").mkdir()
    assert find_latest_revision(str(tmp_path), "a") == (3, f"{tmp_path}/a.r3")


def test_find_latest_revision_none(tmp_path):
    assert find_latest_revision(str(tmp_path), "a") is None
    (tmp_path / "a.r70000").write_bytes(b"x")
    assert find_latest_revision(str(tmp_path), "a") is None