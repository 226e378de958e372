"""Core utilities shared across the roster modules."""

from atcroster.core.config import RosterConfig, get_roster_config, load_roster_config
from atcroster.core.constants import Rating, RoleTag
from atcroster.core.results import ErrorKind, Outcome

__all__ = [
    "ErrorKind",
    "Outcome",
    "Rating",
    "RoleTag",
    "RosterConfig",
    "get_roster_config",
    "load_roster_config",
]
