"""
Config loader: mesh config YAML merge onto defaults, env variable injection, app settings.

- apply_mesh_config(): parse mesh YAML/JSON text and overlay it onto a default MeshConfig.
- Merge policy: mappings merge key by key; lists and scalars replace; null keeps the default.
- Environment variable injection: ${ENV_VAR} replacement in string values.
- App settings from config/app.yaml (host, port, mesh_config_file, watch_debounce) with env overrides.
"""

import os
import re
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from meshconfig.config.schemas import AppSettings, MeshConfig
from meshconfig.errors import MeshConfigParseError, ReloadIOError

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")

_app_settings: AppSettings | None = None


def reset_app_settings_cache() -> None:
    """Clear cached app settings (for tests). Next get_app_settings() will reload from config and env."""
    global _app_settings
    _app_settings = None


def _substitute_env(value: Any) -> Any:
    """Replace ${VAR} and $VAR in strings; recurse into dict/list. Unset variables are left as written."""
    if isinstance(value, str):
        def repl(m: re.Match[str]) -> str:
            name = m.group(1) or m.group(2) or ""
            return os.environ.get(name, m.group(0))
        return _ENV_PATTERN.sub(repl, value)
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    return value


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Return a new dict with override laid over base. Neither input is mutated.

    dict + dict merges recursively; any other override value replaces the base
    value wholesale (lists included); a None override keeps the base value.
    """
    result = deepcopy(base)
    for key, value in override.items():
        if value is None and key in result:
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = deep_merge(current, value)
        else:
            result[key] = deepcopy(value)
    return result


def _to_aliases(data: dict[str, Any], model: type[BaseModel]) -> dict[str, Any]:
    """Rename snake_case field names in data to the model's camelCase aliases, nested models included."""
    by_name = model.model_fields
    out: dict[str, Any] = {}
    for key, value in data.items():
        field = by_name.get(key)
        if field is None:
            field = next((f for f in by_name.values() if f.alias == key), None)
        if field is None:
            out[key] = value
            continue
        ann = field.annotation
        if isinstance(value, dict) and isinstance(ann, type) and issubclass(ann, BaseModel):
            value = _to_aliases(value, ann)
        out[field.alias or key] = value
    return out


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def apply_mesh_config(text: str, default: MeshConfig) -> MeshConfig:
    """
    Parse mesh config text (YAML or JSON) and overlay it onto default.
    Keys may be camelCase (ingressClass) or snake_case (ingress_class).

    Args:
        text: Raw file content.
        default: Base config; fields missing from text keep these values.

    Returns:
        Fully populated, validated MeshConfig.

    Raises:
        MeshConfigParseError: Malformed YAML, non-mapping root, unknown field or invalid value.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MeshConfigParseError(f"invalid mesh config YAML: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MeshConfigParseError(f"mesh config must be a mapping, got {type(data).__name__}")
    try:
        merged = deep_merge(default.model_dump(by_alias=True), _to_aliases(_substitute_env(data), MeshConfig))
    except RecursionError as e:
        # yaml anchors can build self-referencing lists and mappings
        raise MeshConfigParseError("invalid mesh config: self-referencing value") from e
    try:
        return MeshConfig.model_validate(merged)
    except ValidationError as e:
        raise MeshConfigParseError(f"invalid mesh config: {_format_validation_error(e)}") from e


def read_mesh_config(path: str | Path, default: MeshConfig) -> MeshConfig:
    """Read path and apply it onto default. Raises ReloadIOError or MeshConfigParseError."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ReloadIOError(str(path), str(e)) from e
    return apply_mesh_config(text, default)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file and return dict with env substitution."""
    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    return _substitute_env(data)


def _app_config_path() -> Path:
    """Path to app.yaml; CONFIG_DIR env or default 'config'."""
    base = Path(os.environ.get("CONFIG_DIR", "config")).resolve()
    return base / "app.yaml"


def get_app_settings() -> AppSettings:
    """
    Return process settings from config/app.yaml; loaded once.
    MESH_CONFIG_FILE, MESH_WATCH_DEBOUNCE, MESH_HOST and MESH_PORT override the file.
    """
    global _app_settings
    if _app_settings is None:
        data = _load_yaml(_app_config_path())
        if os.environ.get("MESH_CONFIG_FILE"):
            data["mesh_config_file"] = os.environ["MESH_CONFIG_FILE"]
        if os.environ.get("MESH_WATCH_DEBOUNCE"):
            data["watch_debounce"] = os.environ["MESH_WATCH_DEBOUNCE"]
        if os.environ.get("MESH_HOST"):
            data["host"] = os.environ["MESH_HOST"]
        if os.environ.get("MESH_PORT"):
            data["port"] = os.environ["MESH_PORT"]
        _app_settings = AppSettings.model_validate(data)
    return _app_settings
