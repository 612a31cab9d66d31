"""Tests for atomic JSON persistence."""

import json
import os

import pytest


def test_atomic_write_creates_parents(tmp_path):
    from slack_gateway.fileutil import atomic_write

    target = tmp_path / "a" / "b" / "f.txt"
    atomic_write(target, "content")
    assert target.read_text() == "content"


def test_failed_write_leaves_original(tmp_path, monkeypatch):
    from slack_gateway.fileutil import atomic_write

    target = tmp_path / "f.txt"
    target.write_text("original")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError):
        atomic_write(target, "new")
    assert target.read_text() == "original"
    assert [p.name for p in tmp_path.iterdir()] == ["f.txt"]


def test_json_helpers(tmp_path):
    from slack_gateway.fileutil import read_json, write_json

    path = tmp_path / "data.json"
    assert read_json(path, default={}) == {}
    write_json(path, {"b": 1, "a": [1, 2]})
    assert read_json(path) == {"a": [1, 2], "b": 1}
    assert json.loads(path.read_text()) == {"a": [1, 2], "b": 1}
