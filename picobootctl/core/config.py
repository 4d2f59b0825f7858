"""Settings loading and validation for picobootctl YAML configuration."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from picobootctl.core.errors import ConfigLoadError, ConfigValidationError
from picobootctl.core.model import MatchFilter, Settings, Timeouts

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("picobootctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def user_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "picobootctl/config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read settings file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Settings file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path | Traversable) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _build_settings(doc: dict[str, Any]) -> Settings:
    timeouts = doc.get("timeouts", {})
    otp_write = doc.get("otp_write", {})
    match = doc.get("match", {})
    defaults = Timeouts()
    return Settings(
        timeouts=Timeouts(
            command_ms=int(timeouts.get("command_ms", defaults.command_ms)),
            data_ms=int(timeouts.get("data_ms", defaults.data_ms)),
            ack_ms=int(timeouts.get("ack_ms", defaults.ack_ms)),
            control_ms=int(timeouts.get("control_ms", defaults.control_ms)),
            otp_base_ms=int(otp_write.get("base_ms", defaults.otp_base_ms)),
            otp_per_byte_ms=int(otp_write.get("per_byte_ms", defaults.otp_per_byte_ms)),
        ),
        match=MatchFilter(
            vid=int(match.get("vid", -1)),
            pid=match.get("pid"),
            serial=str(match["serial"]) if match.get("serial") is not None else None,
        ),
    )


def load_settings(path: Path | None = None) -> LoadedSettings:
    """Load packaged defaults overlaid with the user settings file.

    `path` replaces the XDG location; a missing user file is not an error.
    """
    packaged = resources.files("picobootctl.settings").joinpath("defaults.yaml")
    doc = _read_yaml(packaged)
    _validate(doc, packaged)
    sources = [str(packaged)]

    user_path = path or user_config_path()
    if user_path.is_file():
        user_doc = _read_yaml(user_path)
        _validate(user_doc, user_path)
        LOGGER.debug("Applying settings from %s", user_path)
        doc = _merge(doc, user_doc)
        sources.append(str(user_path))
    elif path is not None:
        raise ConfigLoadError(f"Settings file {path} does not exist")

    return LoadedSettings(settings=_build_settings(doc), sources=tuple(sources))
