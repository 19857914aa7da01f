import os

import pytest

from blockserve.fileutil import (
    alloc_file,
    free_disk_space,
    is_readable,
    is_writable,
    iter_line_fields,
    last_modification,
    mkdir_p,
    set_size,
)


def test_is_readable(tmp_path):
    target = tmp_path / "f"
    target.write_text("x")
    assert is_readable(str(target))
    assert not is_readable(str(tmp_path / "missing"))


def test_is_writable_does_not_leave_file(tmp_path):
    target = tmp_path / "new"
    assert is_writable(str(target))
    assert not target.exists()


def test_is_writable_existing(tmp_path):
    target = tmp_path / "existing"
    target.write_text("data")
    assert is_writable(str(target))
    assert target.read_text() == "data"


def test_is_writable_in_missing_dir(tmp_path):
    assert not is_writable(str(tmp_path / "nodir" / "file"))


def test_mkdir_p_nested(tmp_path):
    target = tmp_path / "a" / "b" / "c"
    mkdir_p(str(target))
    assert target.is_dir()
    mkdir_p(str(target) + "/")
    assert target.is_dir()


def test_mkdir_p_under_file_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    with pytest.raises(OSError):
        mkdir_p(str(blocker / "sub"))


def test_set_size(tmp_path):
    target = tmp_path / "sized"
    with open(target, "wb") as stream:
        set_size(stream.fileno(), 8192)
        assert os.fstat(stream.fileno()).st_size == 8192


def test_alloc_file_grows_file_when_successful(tmp_path):
    target = tmp_path / "alloc"
    with open(target, "wb") as stream:
        ok = alloc_file(stream.fileno(), 0, 4096)
        size = os.fstat(stream.fileno()).st_size
    assert (ok and size == 4096) or (not ok and size == 0)


def test_free_disk_space(tmp_path):
    space = free_disk_space(str(tmp_path))
    assert space.total >= space.available >= 0
    assert space.total > 0


def test_free_disk_space_missing(tmp_path):
    with pytest.raises(OSError):
        free_disk_space(str(tmp_path / "missing"))


def test_last_modification(tmp_path):
    target = tmp_path / "m"
    target.write_text("x")
    assert last_modification(str(target)) == int(os.stat(target).st_mtime)
    assert last_modification(str(tmp_path / "missing")) == 0


def test_iter_line_fields(tmp_path):
    target = tmp_path / "lines"
    target.write_text("  host1  comment with spaces  \n\n# x\nsingle\n")
    result = list(iter_line_fields(str(target), 1, 2))
    assert result == [["host1", "comment with spaces"], ["#", "x"], ["single"]]


def test_iter_line_fields_min(tmp_path):
    target = tmp_path / "lines"
    target.write_text("a b\nsingle\n\tc\td\r\n")
    result = list(iter_line_fields(str(target), 2, 2))
    assert result == [["a", "b"], ["c", "d"]]


def test_iter_line_fields_missing(tmp_path):
    with pytest.raises(OSError):
        list(iter_line_fields(str(tmp_path / "missing"), 1, 2))