"""Tests for the local storage adapter."""

import pytest

from targetflow.exceptions import StorageError
from targetflow.run.storage import LocalStorage, normalize_paths


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / ".targetflow")


@pytest.mark.parametrize(
    "format,value",
    [
        ("pickle", {"a": (1, 2), "b": {3, 4}}),
        ("json", {"a": [1, 2], "b": "x"}),
        ("yaml", {"a": [1, 2], "b": "x"}),
    ],
)
def test_store_and_load(storage, format, value):
    location = storage.store("t", value, format)
    assert location == "objects/t"
    assert storage.exists(location)
    assert storage.load(location, format) == value


def test_store_leaves_no_temp_files(storage):
    storage.store("t", [1, 2, 3])
    assert [p.name for p in storage.objects.iterdir()] == ["t"]


def test_unencodable_value(storage):
    with pytest.raises(StorageError):
        storage.store("t", {1, 2}, "json")
    assert not storage.exists("objects/t")


def test_unpicklable_value(storage):
    with pytest.raises(StorageError):
        storage.store("t", lambda: None, "pickle")


def test_unknown_format(storage):
    with pytest.raises(StorageError):
        storage.store("t", 1, "parquet")


def test_load_missing(storage):
    with pytest.raises(StorageError):
        storage.load("objects/missing")


def test_file_format(storage, tmp_path):
    out = tmp_path / "out.txt"
    out.write_text("data")

    location = storage.store("t", str(out), "file")
    assert storage.load(location, "file") == [str(out)]
    assert not storage.changed(location, "file")

    out.unlink()
    assert storage.changed(location, "file")


def test_changed_when_object_missing(storage):
    assert storage.changed(None)
    location = storage.store("t", 1)
    assert not storage.changed(location)
    assert storage.delete(location)
    assert storage.changed(location)
    assert not storage.delete(location)


def test_normalize_paths(tmp_path):
    assert normalize_paths("a.txt") == ["a.txt"]
    assert normalize_paths([tmp_path / "a", "b"]) == [str(tmp_path / "a"), "b"]
    with pytest.raises(StorageError):
        normalize_paths(42)
    with pytest.raises(StorageError):
        normalize_paths(["a", 1])
