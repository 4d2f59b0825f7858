from __future__ import annotations

from pathlib import Path

import pytest

from picobootctl.core.config import load_settings
from picobootctl.core.errors import ConfigLoadError, ConfigValidationError
from picobootctl.core.model import MatchFilter, Timeouts


def _write_config(root: Path, content: str) -> Path:
    path = root / "picobootctl" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))


def test_packaged_defaults() -> None:
    loaded = load_settings()
    assert loaded.settings.timeouts == Timeouts()
    assert loaded.settings.match == MatchFilter()
    assert len(loaded.sources) == 1


def test_user_file_overrides_individual_keys(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "cfg",
        """
timeouts:
  data_ms: 20000
otp_write:
  per_byte_ms: 8
match:
  serial: "E660583883453A2C"
""",
    )
    loaded = load_settings()
    assert loaded.settings.timeouts.data_ms == 20000
    assert loaded.settings.timeouts.command_ms == 3000
    assert loaded.settings.timeouts.otp_write_ms(10) == 5080
    assert loaded.settings.match.serial == "E660583883453A2C"
    assert loaded.settings.match.vid == -1
    assert loaded.sources[-1] == str(path)


def test_empty_user_file_is_accepted(tmp_path: Path) -> None:
    _write_config(tmp_path / "cfg", "")
    assert load_settings().settings.timeouts == Timeouts()


def test_duplicate_keys_rejected(tmp_path: Path) -> None:
    _write_config(
        tmp_path / "cfg",
        """
timeouts:
  data_ms: 100
  data_ms: 200
""",
    )
    with pytest.raises(ConfigValidationError, match="Duplicate key 'data_ms'"):
        load_settings()


@pytest.mark.parametrize(
    "content",
    [
        "timeouts:\n  data_ms: 0\n",
        "timeouts:\n  bogus_ms: 10\n",
        "match:\n  pid: 70000\n",
        "match:\n  serial: 1234\n",
        "- not\n- a mapping\n",
    ],
)
def test_invalid_settings_rejected(tmp_path: Path, content: str) -> None:
    _write_config(tmp_path / "cfg", content)
    with pytest.raises(ConfigValidationError):
        load_settings()


def test_schema_error_names_the_key(tmp_path: Path) -> None:
    _write_config(tmp_path / "cfg", "timeouts:\n  ack_ms: -5\n")
    with pytest.raises(ConfigValidationError, match=r"\(timeouts\.ack_ms\)"):
        load_settings()


def test_explicit_missing_file_is_load_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_settings(tmp_path / "missing.yaml")


def test_explicit_file_replaces_xdg_location(tmp_path: Path) -> None:
    _write_config(tmp_path / "cfg", "timeouts:\n  ack_ms: 1\n")
    other = tmp_path / "other.yaml"
    other.write_text("timeouts:\n  ack_ms: 2\n", encoding="utf-8")
    assert load_settings(other).settings.timeouts.ack_ms == 2
