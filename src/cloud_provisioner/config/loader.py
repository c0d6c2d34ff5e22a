"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.constructor import SafeConstructor
from ruamel.yaml.error import YAMLError

from cloud_provisioner.config.modules import ROOT_SCOPE, expand_modules
from cloud_provisioner.config.schema import Config
from cloud_provisioner.engine.errors import UndeclaredVariableError

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cloud_provisioner.config.schema import VariableDecl

VAR_ENV_PREFIX = "PROVISIONER_VAR_"


class ConfigError(Exception):
    """Raised for configuration loading / validation errors."""


def _coerce(name: str, value: Any, decl: VariableDecl) -> Any:
    """Convert a string value from the CLI or environment to the declared type."""
    if not isinstance(value, str) or decl.type in (None, "string"):
        return value

    if decl.type == "bool":
        if value.lower() not in SafeConstructor.bool_values:
            raise ConfigError(f"Invalid boolean for variable '{name}': {value!r}")
        return SafeConstructor.bool_values[value.lower()]

    if decl.type == "number":
        try:
            return int(value)
        except ValueError:
            pass
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for variable '{name}': {value!r}") from exc

    try:
        parsed = YAML(typ="safe").load(value)
    except YAMLError as exc:
        raise ConfigError(f"Invalid {decl.type} for variable '{name}': {exc}") from exc
    expected = list if decl.type == "list" else dict
    if not isinstance(parsed, expected):
        raise ConfigError(f"Variable '{name}' must be a {decl.type}, got {value!r}")
    return parsed


def resolve_variables(
    config: Config,
    overrides: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Resolve root variable values.

    Priority (highest wins): *overrides* (``--var``) > ``PROVISIONER_VAR_<name>``
    env var > ``.env`` file > declared default. Variables left unset are
    reported as missing during expansion.
    """
    overrides = dict(overrides or {})
    for name in overrides:
        if name not in config.variables:
            raise UndeclaredVariableError(ROOT_SCOPE, name)

    env_file = config.config_dir / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    resolved: dict[str, Any] = {}
    for name, decl in config.variables.items():
        env_key = VAR_ENV_PREFIX + name
        if name in overrides:
            val = overrides[name]
        elif env_key in os.environ:
            val = os.environ[env_key]
        elif dotenv_vals.get(env_key) is not None:
            val = dotenv_vals[env_key]
        else:
            continue
        resolved[name] = _coerce(name, val, decl)
    return resolved


def load_config(
    path: Path | str,
    *,
    variables: Mapping[str, Any] | None = None,
    expand: bool = True,
) -> Config:
    """Load a YAML configuration file and return an expanded ``Config`` object.

    With ``expand=False`` only the file itself is validated; variables and
    modules are left alone (enough to locate the state file).

    Raises:
        ConfigError: On YAML parse errors, missing sections, or validation failures.
        ExpansionError: When module expansion fails.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    try:
        config = Config.model_validate(raw)
        settings = config.engine_settings
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = path.parent
    if not config.state_path.is_absolute():
        config.state_path = config.config_dir / config.state_path

    if not expand:
        return config

    config._variable_values = resolve_variables(config, variables)

    if config.modules:
        logger.debug("Expanding %d module(s)", len(config.modules))
    config._graph = expand_modules(
        config,
        config.config_dir,
        variables=config.variable_values,
        max_depth=settings.max_module_depth,
    )

    logger.info("Loaded config from %s (%d resources)", path, len(config.graph))
    return config
