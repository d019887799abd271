"""Tests for layered settings."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from fromsource.settings import Settings


def test_defaults():
    settings = Settings.load(env={})
    assert settings.work_dir == Path("work-dir")
    assert settings.graph_path == Path("work-dir") / "graph.json"
    assert settings.build_order_path == Path("work-dir") / "build-order.json"
    assert settings.local_cache_dir == Path("wheels-repo") / "cache"
    assert settings.max_workers >= 1
    assert not settings.sdist_only


def test_file_then_env_then_overrides(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"work_dir": "from-file", "max_workers": 2, "sdist_only": True}), encoding="utf-8")
    env = {"FROMSOURCE_MAX_WORKERS": "6", "FROMSOURCE_PRE_BUILT": "Cython, numpy"}
    settings = Settings.load(path, env=env, work_dir=tmp_path / "cli", sdist_only=None)
    assert settings.work_dir == tmp_path / "cli"
    assert settings.max_workers == 6
    assert settings.sdist_only is True
    assert settings.pre_built == ["cython", "numpy"]


def test_pre_built_lookup_is_canonical():
    settings = Settings(pre_built=["Foo_Bar"])
    assert settings.is_pre_built("foo-bar")
    assert settings.is_pre_built("FOO.BAR")
    assert not settings.is_pre_built("other")


def test_unknown_keys_are_rejected(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"wrok_dir": "typo"}), encoding="utf-8")
    with pytest.raises(ValidationError):
        Settings.load(path, env={})


def test_settings_file_must_be_object(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        Settings.load(path, env={})


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Settings.load(env={"FROMSOURCE_MAX_WORKERS": "0"})


def test_retry_policy_from_settings():
    policy = Settings(retry_attempts=3, retry_base_delay=0.5, retry_max_delay=4).retry_policy()
    assert (policy.attempts, policy.base_delay, policy.max_delay) == (3, 0.5, 4)
