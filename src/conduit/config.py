"""Configuration loading for Conduit.

Reads the engine settings file (``conduit.yaml``) and workflow definition
files. Pydantic models validate both; environment variables prefixed with
``CONDUIT_`` override engine settings for deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from conduit.engine.models import WorkflowDefinition
from conduit.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CONDUIT_"
DEFAULT_CONFIG_FILE = "conduit.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class EngineConfig(BaseModel):
    max_parallel: int = Field(4, ge=1)  # concurrent job instances per run
    db_path: str = ".conduit/conduit.db"
    workspace_dir: str = ".conduit/workspaces"

    retry_attempts: int = Field(3, ge=1)  # InfrastructureError retries per call
    retry_backoff_seconds: float = Field(0.5, ge=0)

    mask_token: str = "***"
    log_tail_bytes: int = Field(64 * 1024, ge=0)  # kept per step log

    cache_retention_days: int | None = 7
    cache_max_bytes: int | None = None  # LRU eviction threshold for `conduit gc`
    artifact_retention_days: int | None = 30

    default_job_timeout_minutes: float | None = 360
    cron_window_seconds: int = Field(60, ge=1)


# ── Loaders ──────────────────────────────────────────────────────────────────


def load_config(path: Path | None = None) -> EngineConfig:
    """Load engine settings.

    Args:
        path: YAML settings file. When None, ``conduit.yaml`` in the current
            directory is used if it exists, otherwise defaults.

    Returns:
        Validated EngineConfig with ``CONDUIT_*`` environment overrides applied.

    Raises:
        ConfigError: If an explicit file is missing or validation fails.
    """
    raw: dict[str, Any] = {}
    if path is None:
        default = Path(DEFAULT_CONFIG_FILE)
        if default.exists():
            path = default
    elif not path.exists():
        raise ConfigError(f"Conduit config not found: {path}")

    if path is not None:
        with open(path) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{path}: expected a mapping at top level")

    # Environment variable overrides for deployment
    for name in EngineConfig.model_fields:
        value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            raw[name] = None if value.lower() in ("", "none", "null") else value

    try:
        config = EngineConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine config: {e}") from e

    logger.info(
        "Loaded Conduit config: max_parallel=%d db=%s", config.max_parallel, config.db_path
    )
    return config


def load_workflow(path: Path) -> WorkflowDefinition:
    """Read a workflow YAML file into a WorkflowDefinition.

    Only schema validation happens here; matrices, the ``needs`` graph and
    expressions are checked when the workflow is planned.

    Raises:
        ConfigError: If the file is missing, not YAML, or fails validation.
    """
    if not path.exists():
        raise ConfigError(f"Workflow file not found: {path}")
    with open(path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in raw and "on" not in raw:
        raw["on"] = raw.pop(True)
    raw.setdefault("name", path.stem)
    raw["on"] = _normalize_triggers(raw.get("on"))

    try:
        definition = WorkflowDefinition.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid workflow {path}: {e}") from e

    logger.info("Loaded workflow '%s' (%d jobs)", definition.name, len(definition.jobs))
    return definition


def _normalize_triggers(value: Any) -> list[dict[str, Any]]:
    """Accept the compact trigger forms used in workflow files.

    ``on: push``, ``on: [push, manual]`` and ``on: {push: {branches: [main]}}``
    all become a list of ``{"event": ..., ...}`` mappings.
    """
    if value is None:
        return []
    if isinstance(value, str):
        return [{"event": value}]
    if isinstance(value, dict):
        triggers = []
        for event, body in value.items():
            if event == "schedule" and isinstance(body, list):
                body = {"cron": [b["cron"] if isinstance(b, dict) else b for b in body]}
            if isinstance(body, dict) and isinstance(body.get("cron"), str):
                body = {**body, "cron": [body["cron"]]}
            triggers.append({"event": event, **(body or {})})
        return triggers
    if isinstance(value, list):
        triggers = []
        for item in value:
            if isinstance(item, dict) and "event" in item:
                triggers.append(item)
            else:
                triggers.extend(_normalize_triggers(item))
        return triggers
    raise ConfigError(f"Unsupported trigger specification: {value!r}")
