"""YAML configuration merged with environment overrides."""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .context import to_boolean
from .tools.patch import DEFAULT_MAX_PATCH_BYTES

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "pipeline": {
        "apply_model_patches": False,
        "enable_fallback_file_write": False,
        "log_full_content": False,
        "max_patch_bytes": DEFAULT_MAX_PATCH_BYTES,
        "summary_chars": 200,
    },
    "automation": {
        "disabled": False,
        "version": "1.0.0",
        "branch_prefix": "cra",
        "labels": ["automated"],
        "default_host": "github.com",
        "git_identity": {
            "name": "Change Request Automation",
            "email": "automation@users.noreply.github.com",
        },
    },
    "workspace": {
        "base_dir": "",
    },
    "models": {
        "default": "gpt-5",
        "commit_message": "gpt-5-mini",
        "timeout": 250,
        "base_url": "https://api.openai.com/v1",
    },
    "paths": {
        "db_path": "data/sessions.sqlite",
    },
}

ENV_FLAG_OVERRIDES: Tuple[Tuple[str, str, str], ...] = (
    ("CRA_APPLY_MODEL_PATCHES", "pipeline", "apply_model_patches"),
    ("CRA_ENABLE_FALLBACK_FILE_WRITE", "pipeline", "enable_fallback_file_write"),
    ("CRA_LOG_FULL_CONTENT", "pipeline", "log_full_content"),
    ("CRA_AUTOMATION_DISABLED", "automation", "disabled"),
)


class ConfigError(ValueError):
    """Raised when configuration cannot be read or has the wrong shape."""


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Path | None) -> Dict[str, Any]:
    """Load YAML configuration and merge it over ``DEFAULT_CONFIG_TEMPLATE``."""
    if config_path is None:
        return default_config()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return merge_config(DEFAULT_CONFIG_TEMPLATE, data)


@dataclass(slots=True, frozen=True)
class PipelineSettings:
    """Resolved runtime switches for the prompt pipeline."""

    apply_model_patches: bool = False
    enable_fallback_file_write: bool = False
    log_full_content: bool = False
    automation_disabled: bool = False
    max_patch_bytes: int = DEFAULT_MAX_PATCH_BYTES
    summary_chars: int = 200
    automation_version: str = "1.0.0"
    branch_prefix: str = "cra"
    default_labels: Tuple[str, ...] = ("automated",)
    default_host: str = "github.com"
    git_identity_name: str = "Change Request Automation"
    git_identity_email: str = "automation@users.noreply.github.com"
    workspace_base_dir: Optional[str] = None
    ambient_token: Optional[str] = field(default=None, repr=False)
    model: str = "gpt-5"
    commit_message_model: str = "gpt-5-mini"
    model_timeout: float = 250.0
    model_base_url: str = "https://api.openai.com/v1"
    db_path: str = "data/sessions.sqlite"


def settings_from_config(
    config: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> PipelineSettings:
    """Materialise ``PipelineSettings`` from merged config plus environment overrides."""
    data = merge_config(DEFAULT_CONFIG_TEMPLATE, config or {})
    environ = os.environ if env is None else env

    for variable, section, key in ENV_FLAG_OVERRIDES:
        flag = to_boolean(environ.get(variable))
        if flag is not None:
            data[section][key] = flag
    if environ.get("CRA_WORKSPACE_BASE_DIR"):
        data["workspace"]["base_dir"] = environ["CRA_WORKSPACE_BASE_DIR"]
    if environ.get("CRA_MAX_PATCH_BYTES"):
        try:
            data["pipeline"]["max_patch_bytes"] = int(environ["CRA_MAX_PATCH_BYTES"])
        except ValueError as error:
            raise ConfigError(f"CRA_MAX_PATCH_BYTES must be an integer: {environ['CRA_MAX_PATCH_BYTES']}") from error

    pipeline = data["pipeline"]
    automation = data["automation"]
    identity = automation.get("git_identity") or {}
    models = data["models"]
    return PipelineSettings(
        apply_model_patches=bool(pipeline.get("apply_model_patches")),
        enable_fallback_file_write=bool(pipeline.get("enable_fallback_file_write")),
        log_full_content=bool(pipeline.get("log_full_content")),
        automation_disabled=bool(automation.get("disabled")),
        max_patch_bytes=int(pipeline.get("max_patch_bytes") or DEFAULT_MAX_PATCH_BYTES),
        summary_chars=int(pipeline.get("summary_chars") or 200),
        automation_version=str(automation.get("version") or "1.0.0"),
        branch_prefix=str(automation.get("branch_prefix") or "cra"),
        default_labels=tuple(automation.get("labels") or ()),
        default_host=str(automation.get("default_host") or "github.com"),
        git_identity_name=str(identity.get("name") or "Change Request Automation"),
        git_identity_email=str(identity.get("email") or "automation@users.noreply.github.com"),
        workspace_base_dir=data["workspace"].get("base_dir") or None,
        ambient_token=environ.get("GITHUB_TOKEN") or None,
        model=str(models.get("default") or "gpt-5"),
        commit_message_model=str(models.get("commit_message") or models.get("default") or "gpt-5-mini"),
        model_timeout=float(models.get("timeout") or 250),
        model_base_url=str(models.get("base_url") or "https://api.openai.com/v1"),
        db_path=str(data["paths"].get("db_path") or "data/sessions.sqlite"),
    )


__all__ = [
    "DEFAULT_CONFIG_TEMPLATE",
    "ConfigError",
    "PipelineSettings",
    "default_config",
    "load_config",
    "merge_config",
    "settings_from_config",
]
