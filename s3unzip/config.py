"""
Options for an archive-to-S3 run.

``validate_options`` is the only gate between caller input and the pipeline:
it is pure and raises ValidationError before any network access happens.
``load_options`` adds the YAML + environment-variable layer used by the CLI.
"""

from __future__ import annotations

import importlib
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from s3unzip.exceptions import ValidationError
from s3unzip.filters import EntryFilter, IdentityFilter, as_entry_filter
from s3unzip.s3 import DEFAULT_PART_SIZE, MIN_PART_SIZE
from s3unzip.sink import DEFAULT_MAX_CONCURRENCY

DEFAULT_DESTINATION_PATH_PREFIX = "/"

_REQUIRED_KEYS = ("access_key", "secret_key", "bucket_name")
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


@dataclass(frozen=True)
class Options:
    access_key: str
    secret_key: str = field(repr=False)
    bucket_name: str
    destination_path_prefix: str = DEFAULT_DESTINATION_PATH_PREFIX
    entry_filter: EntryFilter = field(default_factory=IdentityFilter)
    endpoint_url: Optional[str] = None
    region_name: Optional[str] = None
    part_size: int = DEFAULT_PART_SIZE
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    password: Optional[str] = field(default=None, repr=False)


_KNOWN_KEYS = frozenset(f.name for f in fields(Options))


def _ensure_optional_str(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ValidationError(f"invalid {key}", key=key)
    return value


def _ensure_int(raw: Mapping[str, Any], key: str, default: int, minimum: int) -> int:
    value = raw.get(key, default)
    if value is None:
        return default
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(
            f"invalid {key}: must be an integer >= {minimum}", key=key
        )
    return value


def validate_options(raw: Union[Options, Mapping[str, Any]]) -> Options:
    """Validate and normalize raw options.

    Args:
        raw: Mapping of option names to values, or an Options instance. A
            directly constructed Options goes through the same checks.

    Returns:
        Immutable Options with defaults applied

    Raises:
        ValidationError: On the first missing or invalid option
    """
    if isinstance(raw, Options):
        raw = {f.name: getattr(raw, f.name) for f in fields(Options)}
    if not isinstance(raw, Mapping):
        raise ValidationError("options must be a mapping")

    for key in _REQUIRED_KEYS:
        value = raw.get(key)
        if not value or not isinstance(value, str):
            raise ValidationError(f"missing {key}", key=key)

    unknown = sorted(set(raw) - _KNOWN_KEYS)
    if unknown:
        raise ValidationError(
            f"unknown option(s): {', '.join(unknown)}", key=unknown[0]
        )

    entry_filter = as_entry_filter(raw.get("entry_filter"))
    if entry_filter is None:
        raise ValidationError("invalid entry_filter", key="entry_filter")

    prefix = raw.get("destination_path_prefix")
    if prefix is None:
        prefix = DEFAULT_DESTINATION_PATH_PREFIX
    elif not isinstance(prefix, str):
        raise ValidationError(
            "invalid destination_path_prefix", key="destination_path_prefix"
        )

    return Options(
        access_key=raw["access_key"],
        secret_key=raw["secret_key"],
        bucket_name=raw["bucket_name"],
        destination_path_prefix=prefix,
        entry_filter=entry_filter,
        endpoint_url=_ensure_optional_str(raw, "endpoint_url"),
        region_name=_ensure_optional_str(raw, "region_name"),
        part_size=_ensure_int(raw, "part_size", DEFAULT_PART_SIZE, MIN_PART_SIZE),
        max_concurrency=_ensure_int(raw, "max_concurrency", DEFAULT_MAX_CONCURRENCY, 1),
        password=_ensure_optional_str(raw, "password"),
    )


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute ${VAR} and ${VAR:default} in config values.

    Raises:
        ValidationError: If a referenced variable is unset and has no default
    """
    if isinstance(value, str):

        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            default_value = match.group(2)

            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default_value is not None:
                return default_value
            raise ValidationError(
                f"Environment variable '{var_name}' is not set and no default provided"
            )

        return _ENV_VAR_PATTERN.sub(replacer, value)

    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]

    else:
        return value


def resolve_filter_reference(reference: str) -> Any:
    """Import ``"package.module:attribute"`` and return the attribute."""
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ValidationError("invalid entry_filter", key="entry_filter")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ValidationError(
            f"invalid entry_filter: cannot import {reference}", key="entry_filter"
        ) from exc
    # Filter classes are instantiated with no arguments
    if isinstance(target, type) and issubclass(target, EntryFilter):
        return target()
    return target


def read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML options file and substitute environment variables.

    The result is still raw: it has not been through ``validate_options``.
    """
    config_path = Path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(
            f"cannot read config: {exc}", config_path=str(config_path)
        ) from exc
    if not isinstance(raw, dict):
        raise ValidationError(
            "config file must contain a mapping", config_path=str(config_path)
        )
    return substitute_env_vars(raw)


def load_options(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    fallbacks: Optional[Mapping[str, Any]] = None,
) -> Options:
    """Load, substitute and validate options from a YAML file.

    Args:
        path: YAML file holding a mapping of option names (optional)
        overrides: Values that replace the file's (None values are ignored)
        fallbacks: Values used only where the file leaves an option empty
    """
    data: Dict[str, Any] = read_config_file(path) if path else {}
    for key, value in (fallbacks or {}).items():
        if not data.get(key) and value:
            data[key] = value
    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})
    if isinstance(data.get("entry_filter"), str):
        data["entry_filter"] = resolve_filter_reference(data["entry_filter"])
    return validate_options(data)
