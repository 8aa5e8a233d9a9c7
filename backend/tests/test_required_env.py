import importlib.util
import os
from pathlib import Path

import pytest

MODULE_PATH = Path(__file__).resolve().parents[1] / "main.py"


def _base_env(monkeypatch, tmp_path):
    monkeypatch.setenv("JWT_SECRET", "test-secret-123456")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))


def _import_main_module():
    spec = importlib.util.spec_from_file_location("backend_main_required_env", MODULE_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec and spec.loader
    spec.loader.exec_module(module)
    return module


def test_short_jwt_secret_fails_fast(monkeypatch, tmp_path):
    _base_env(monkeypatch, tmp_path)
    monkeypatch.setenv("JWT_SECRET", "short")

    with pytest.raises(RuntimeError, match="JWT_SECRET must be at least 16 characters"):
        _import_main_module()


def test_missing_jwt_secret_generates_ephemeral_secret(monkeypatch, tmp_path):
    _base_env(monkeypatch, tmp_path)
    monkeypatch.delenv("JWT_SECRET", raising=False)

    first = _import_main_module()
    second = _import_main_module()

    assert len(first.JWT_SECRET) >= 16
    assert first.JWT_SECRET != second.JWT_SECRET


def test_data_dir_from_env(monkeypatch, tmp_path):
    _base_env(monkeypatch, tmp_path)

    module = _import_main_module()

    assert module.DATA_DIR == str(tmp_path / "data")


def test_data_dir_defaults_next_to_backend(monkeypatch, tmp_path):
    _base_env(monkeypatch, tmp_path)
    monkeypatch.delenv("DATA_DIR", raising=False)

    module = _import_main_module()

    assert module.DATA_DIR == os.path.join(module.PROJECT_ROOT, "data")


def test_import_does_not_touch_data_dir(monkeypatch, tmp_path):
    _base_env(monkeypatch, tmp_path)

    _import_main_module()

    assert not (tmp_path / "data").exists()
