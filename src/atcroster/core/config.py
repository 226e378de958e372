"""Configuration loading utilities."""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from atcroster.core.constants import (
    HEADQUARTERS_FACILITY,
    POOL_FACILITIES,
    UNASSIGNED_FACILITY,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterConfig:
    """Roster configuration loaded from config/roster.json and the environment.

    Exam IDs identify the exams that unlock each rating step. Day windows
    drive the transfer eligibility gates.
    """

    basic_exam_id: int = 7
    s1_exam_id: int = 1
    s2_exam_id: int = 2
    s3_exam_id: int = 3
    c1_exam_id: int = 4
    unassigned_facility: str = UNASSIGNED_FACILITY
    headquarters_facility: str = HEADQUARTERS_FACILITY
    pool_facilities: frozenset[str] = field(default_factory=lambda: POOL_FACILITIES)
    transfer_cooldown_days: int = 90
    initial_transfer_window_days: int = 30
    promotion_cooldown_days: int = 90
    facility_cache_ttl: int = 60
    jwt_secret: str = ""
    jwt_issuer: str = ""
    jwt_audience: str = ""
    cosmos_database: str = ""

    def is_pool(self, facility: str) -> bool:
        """Check if a facility code is one of the sentinel pools."""
        return facility.upper() in self.pool_facilities


def get_project_root() -> Path:
    """Get the project root directory."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    raise RuntimeError("Could not find project root (no pyproject.toml found)")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, value)
        return default


def _read_config_file() -> dict:
    """Read config/roster.json, or return an empty dict if it is absent."""
    try:
        config_path = get_project_root() / "config" / "roster.json"
    except RuntimeError:
        logger.warning("No project root found — using default roster config")
        return {}

    if not config_path.exists():
        logger.warning("Config file not found: %s — using defaults", config_path)
        return {}

    with config_path.open() as f:
        return json.load(f)


def load_roster_config() -> RosterConfig:
    """Load roster configuration from config file and environment.

    Environment variables override the JSON file:
        ROSTER_EXAM_BASIC, ROSTER_EXAM_S1, ROSTER_EXAM_S2, ROSTER_EXAM_S3,
        ROSTER_EXAM_C1: Exam IDs for each rating step
        ROSTER_FACILITY_CACHE_TTL: Facility summary cache lifetime (seconds)
        ROSTER_JWT_SECRET, ROSTER_JWT_ISSUER, ROSTER_JWT_AUDIENCE: Token validation
        COSMOS_DATABASE: Cosmos DB database name

    Returns:
        RosterConfig with file values, env overrides, and defaults
    """
    load_dotenv()

    data = _read_config_file()
    exams = data.get("exams", {})
    defaults = RosterConfig()

    pools = data.get("pool_facilities")
    pool_facilities = (
        frozenset(code.upper() for code in pools) if pools else defaults.pool_facilities
    )

    return RosterConfig(
        basic_exam_id=_env_int("ROSTER_EXAM_BASIC", exams.get("basic", defaults.basic_exam_id)),
        s1_exam_id=_env_int("ROSTER_EXAM_S1", exams.get("s1", defaults.s1_exam_id)),
        s2_exam_id=_env_int("ROSTER_EXAM_S2", exams.get("s2", defaults.s2_exam_id)),
        s3_exam_id=_env_int("ROSTER_EXAM_S3", exams.get("s3", defaults.s3_exam_id)),
        c1_exam_id=_env_int("ROSTER_EXAM_C1", exams.get("c1", defaults.c1_exam_id)),
        unassigned_facility=data.get("unassigned_facility", defaults.unassigned_facility),
        headquarters_facility=data.get("headquarters_facility", defaults.headquarters_facility),
        pool_facilities=pool_facilities,
        transfer_cooldown_days=data.get(
            "transfer_cooldown_days", defaults.transfer_cooldown_days
        ),
        initial_transfer_window_days=data.get(
            "initial_transfer_window_days", defaults.initial_transfer_window_days
        ),
        promotion_cooldown_days=data.get(
            "promotion_cooldown_days", defaults.promotion_cooldown_days
        ),
        facility_cache_ttl=_env_int(
            "ROSTER_FACILITY_CACHE_TTL",
            data.get("facility_cache_ttl", defaults.facility_cache_ttl),
        ),
        jwt_secret=os.getenv("ROSTER_JWT_SECRET", ""),
        jwt_issuer=os.getenv("ROSTER_JWT_ISSUER", ""),
        jwt_audience=os.getenv("ROSTER_JWT_AUDIENCE", ""),
        cosmos_database=os.getenv("COSMOS_DATABASE") or data.get("cosmos_database", ""),
    )


# Cached config instance
_roster_config: RosterConfig | None = None


def get_roster_config() -> RosterConfig:
    """Get cached roster config.

    Loads config once and caches it for subsequent calls.
    """
    global _roster_config
    if _roster_config is None:
        _roster_config = load_roster_config()
    return _roster_config


def reset_roster_config() -> None:
    """Drop the cached config so the next call reloads it."""
    global _roster_config
    _roster_config = None


def get_cosmos_database() -> str:
    """Get Cosmos DB database name."""
    return get_roster_config().cosmos_database
