# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/config/loader.py

import logging
import os
import yaml
from pathlib import Path

from pydantic import ValidationError

from kubeha.errors import ConfigError
from .models import ClusterConfig

log = logging.getLogger("kubeha")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. KUBEHA_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the cluster config
    """
    env = os.environ.get("KUBEHA_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("KUBEHA_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    expanded = os.path.expandvars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def load_config(path: str | Path) -> ClusterConfig:
    """
    Load and validate a cluster YAML config.

    Secrets (SSH key paths, usernames) can live in a ``secrets.yaml`` whose
    structure mirrors the cluster config; it is deep-merged before
    validation. ``${ENV_VAR}`` placeholders are resolved in both files.
    """
    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    try:
        cfg = ClusterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid cluster config {path}:\n{e}") from e

    template = cfg.addons.load_balancer_template
    if template is not None and not template.is_absolute():
        cfg.addons.load_balancer_template = (path.parent / template).resolve()
    return cfg
