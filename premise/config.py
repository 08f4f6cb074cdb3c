"""Configuration loading for premise.

Config sources (in priority order):
1. Explicit arguments passed to functions
2. Environment variables (PREMISE_DATA_DIR, etc.)
3. .env file in current directory
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DATA_DIR = Path(".premise")
DEFAULT_MODEL = "claude-sonnet-4-20250514"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass
class Config:
    project_id: str = ""
    data_dir: Path = DEFAULT_DATA_DIR
    anthropic_api_key: str = ""
    model: str = DEFAULT_MODEL
    classifier_floor: float = 0.35
    recency_window_hours: float = 24.0
    similarity_threshold: float = 0.7
    edge_half_life_days: float = 14.0
    retention_days: float = 30.0
    resolve_after_attempts: int = 3
    conflict_retries: int = 3
    provider_timeout: float = 30.0
    max_violated: int = 5

    @classmethod
    def load(cls) -> Config:
        return cls(
            project_id=os.getenv("PREMISE_PROJECT", "") or Path.cwd().name,
            data_dir=Path(os.getenv("PREMISE_DATA_DIR", str(DEFAULT_DATA_DIR))),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            model=os.getenv("PREMISE_MODEL", DEFAULT_MODEL),
            classifier_floor=_env_float("PREMISE_CLASSIFIER_FLOOR", 0.35),
            recency_window_hours=_env_float("PREMISE_RECENCY_WINDOW_HOURS", 24.0),
            similarity_threshold=_env_float("PREMISE_SIMILARITY_THRESHOLD", 0.7),
            edge_half_life_days=_env_float("PREMISE_EDGE_HALF_LIFE_DAYS", 14.0),
            retention_days=_env_float("PREMISE_RETENTION_DAYS", 30.0),
            resolve_after_attempts=_env_int("PREMISE_RESOLVE_AFTER_ATTEMPTS", 3),
            conflict_retries=_env_int("PREMISE_CONFLICT_RETRIES", 3),
            provider_timeout=_env_float("PREMISE_PROVIDER_TIMEOUT", 30.0),
        )

    @property
    def recency_window_seconds(self) -> float:
        return self.recency_window_hours * 3600.0

    @property
    def edge_half_life_seconds(self) -> float:
        return self.edge_half_life_days * 86400.0

    @property
    def retention_seconds(self) -> float:
        return self.retention_days * 86400.0

    def validate(self) -> list[str]:
        """Return a list of config issues."""
        issues = []
        if not self.project_id:
            issues.append("Project id not set (PREMISE_PROJECT)")
        for name in ("classifier_floor", "similarity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                issues.append(f"{name} must be between 0 and 1 (got {value})")
        for name in ("recency_window_hours", "edge_half_life_days", "retention_days", "provider_timeout"):
            if getattr(self, name) <= 0:
                issues.append(f"{name} must be positive")
        if self.resolve_after_attempts < 1:
            issues.append("resolve_after_attempts must be at least 1")
        if self.conflict_retries < 0:
            issues.append("conflict_retries must not be negative")
        return issues
