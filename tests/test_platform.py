"""Tests for engram.platform — path resolution."""

from pathlib import Path

from engram import platform


def test_data_dir_env_override(monkeypatch, tmp_path):
    monkeypatch.setattr(platform, "is_running_in_docker", lambda: False)
    monkeypatch.setenv("ENGRAM_DATA_DIR", str(tmp_path / "mem"))
    assert platform.get_data_dir() == tmp_path / "mem"


def test_data_dir_defaults_to_platformdirs(monkeypatch):
    monkeypatch.setattr(platform, "is_running_in_docker", lambda: False)
    monkeypatch.delenv("ENGRAM_DATA_DIR", raising=False)
    path = platform.get_data_dir()
    assert isinstance(path, Path)
    assert "engram" in str(path).lower()


def test_docker_uses_data_volume(monkeypatch):
    monkeypatch.setattr(platform, "is_running_in_docker", lambda: True)
    monkeypatch.delenv("ENGRAM_DATA_DIR", raising=False)
    monkeypatch.delenv("ENGRAM_CACHE_DIR", raising=False)
    assert platform.get_data_dir() == Path("/data")
    assert platform.get_cache_dir() == Path("/data/models")


def test_docker_flag_env(monkeypatch):
    monkeypatch.setenv("ENGRAM_DOCKER", "1")
    assert platform.is_running_in_docker() is True
