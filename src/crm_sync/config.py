"""crm_sync.config

Run configuration for the Airtable source.

Credentials come from the environment only; the CLI takes the *names* of
the environment variables, never the values.  Non-secret settings (table
names, page size, retry policy) may be overridden by a YAML file:

    source_tables:
      person: People
      company: Company
      job: Jobs
    page_size: 100
    timeout_seconds: 30
    retry:
      max_attempts: 4
      base_delay: 1.0
      max_delay: 30.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from crm_sync.models import DEFAULT_SOURCE_TABLES, ENTITY_ORDER
from crm_sync.normalize import trim

DEFAULT_API_BASE = "https://api.airtable.com/v0"
MAX_PAGE_SIZE = 100

ALLOWED_YAML_KEYS = frozenset({"source_tables", "page_size", "timeout_seconds", "retry"})
ALLOWED_RETRY_KEYS = frozenset({"max_attempts", "base_delay", "max_delay"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    """Raised when required settings are missing or a config file is invalid."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass
class SyncConfig:
    token: str = field(repr=False)
    base_id: str
    api_base: str = DEFAULT_API_BASE
    source_tables: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_SOURCE_TABLES)
    )
    page_size: int = MAX_PAGE_SIZE
    timeout_seconds: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_env(
        cls,
        token_env: str = "AIRTABLE_TOKEN",
        base_env: str = "AIRTABLE_BASE_ID",
        environ: Mapping[str, str] | None = None,
    ) -> "SyncConfig":
        env = os.environ if environ is None else environ
        token = trim(env.get(token_env))
        base_id = trim(env.get(base_env))
        missing = [name for name, v in ((token_env, token), (base_env, base_id)) if not v]
        if missing:
            raise ConfigError(f"env vars must be set: {', '.join(missing)}")
        api_base = trim(env.get("AIRTABLE_API_BASE")) or DEFAULT_API_BASE
        return cls(token=token, base_id=base_id, api_base=api_base.rstrip("/"))

    def table_for(self, entity_type: str) -> str:
        return self.source_tables[entity_type]


# ---------------------------------------------------------------------------
# YAML overrides
# ---------------------------------------------------------------------------

def load_overrides(config: SyncConfig, yaml_path: Path) -> SyncConfig:
    """Apply a YAML settings file on top of config (in place) and return it.

    Raises:
        ConfigError: If the file is not a mapping or holds invalid values.
        FileNotFoundError: If the YAML file does not exist.
    """
    data = yaml.safe_load(yaml_path.read_text(encoding="utf-8")) or {}
    validate_overrides(data)

    for entity_type, table in (data.get("source_tables") or {}).items():
        config.source_tables[entity_type] = str(table)
    if "page_size" in data:
        config.page_size = int(data["page_size"])
    if "timeout_seconds" in data:
        config.timeout_seconds = float(data["timeout_seconds"])
    retry = data.get("retry") or {}
    if "max_attempts" in retry:
        config.retry.max_attempts = int(retry["max_attempts"])
    if "base_delay" in retry:
        config.retry.base_delay = float(retry["base_delay"])
    if "max_delay" in retry:
        config.retry.max_delay = float(retry["max_delay"])
    return config


def validate_overrides(data: Any) -> None:
    """Raise ConfigError if data does not match the settings schema."""
    if not isinstance(data, dict):
        raise ConfigError("config file must contain a YAML mapping")

    unknown = set(data) - ALLOWED_YAML_KEYS
    if unknown:
        raise ConfigError(f"unknown config keys: {sorted(unknown)}")

    tables = data.get("source_tables") or {}
    if not isinstance(tables, dict):
        raise ConfigError("source_tables must be a mapping of entity type → table name")
    bad_types = set(tables) - set(ENTITY_ORDER)
    if bad_types:
        raise ConfigError(
            f"source_tables has unknown entity types {sorted(bad_types)}; "
            f"expected a subset of {list(ENTITY_ORDER)}"
        )
    for entity_type, table in tables.items():
        if not trim(str(table or "")):
            raise ConfigError(f"source_tables.{entity_type} must be non-empty")

    if "page_size" in data:
        page_size = _as_number(data["page_size"], "page_size")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ConfigError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    if "timeout_seconds" in data:
        if _as_number(data["timeout_seconds"], "timeout_seconds") <= 0:
            raise ConfigError("timeout_seconds must be positive")

    retry = data.get("retry") or {}
    if not isinstance(retry, dict):
        raise ConfigError("retry must be a mapping")
    unknown_retry = set(retry) - ALLOWED_RETRY_KEYS
    if unknown_retry:
        raise ConfigError(f"unknown retry keys: {sorted(unknown_retry)}")
    if "max_attempts" in retry and _as_number(retry["max_attempts"], "retry.max_attempts") < 1:
        raise ConfigError("retry.max_attempts must be at least 1")
    for key in ("base_delay", "max_delay"):
        if key in retry and _as_number(retry[key], f"retry.{key}") < 0:
            raise ConfigError(f"retry.{key} must not be negative")


def _as_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    return float(value)
