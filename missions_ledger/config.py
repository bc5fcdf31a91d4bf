"""Configuration system for the missions ledger.

Pydantic models with sensible defaults, loaded from YAML with ``${VAR}`` and
``${VAR:-default}`` environment expansion.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════════
#  Storage
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "ledger.db"


class StoreConfig(BaseModel):
    max_batch_writes: int = Field(default=500, ge=1, description="Writes allowed in one batch commit")
    page_size: int = Field(default=100, ge=1, description="Rows fetched per page by lazy queries")


class CalendarConfig(BaseModel):
    timezone: str = "America/Sao_Paulo"

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown IANA timezone: {value}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ═══════════════════════════════════════════════════════════════
#  Ledger Rules
# ═══════════════════════════════════════════════════════════════

class SettlementConfig(BaseModel):
    enabled: bool = True
    penalties_enabled: bool = Field(
        default=True, description="When false, days are recorded but no bonus or penalty is applied",
    )
    bonus_gold: int = 10
    penalty_per_task: int = 1
    lookback_days: int = Field(default=7, ge=1)
    run_hour: int = Field(default=0, ge=0, le=23, description="Local hour of the nightly settlement run")
    run_minute: int = Field(default=5, ge=0, le=59)


class RedemptionConfig(BaseModel):
    min_daily_tasks: int = Field(default=4, ge=0, description="Tasks completed today before redeeming; 0 disables")
    enforce_level: bool = True


class PunishmentConfig(BaseModel):
    duration_days: int = 7
    tasks_required: int = 30
    cooldown_minutes: int = 30
    check_interval_seconds: int = 60


class ReconciliationConfig(BaseModel):
    tolerance: int = Field(default=1, ge=0, description="Gold difference tolerated before flagging drift")


class MigrationConfig(BaseModel):
    batch_size: int = Field(default=100, ge=1)


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 28290


# ═══════════════════════════════════════════════════════════════
#  Root
# ═══════════════════════════════════════════════════════════════

class LedgerConfig(BaseModel):
    """Full ledger service config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    settlement: SettlementConfig = Field(default_factory=SettlementConfig)
    redemption: RedemptionConfig = Field(default_factory=RedemptionConfig)
    punishment: PunishmentConfig = Field(default_factory=PunishmentConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> LedgerConfig:
    """Load and validate YAML config file into LedgerConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return LedgerConfig(**raw)
