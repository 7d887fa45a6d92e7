"""Engine configuration with validation.

Settings are validated at construction time so a misconfigured process
fails at startup instead of in the middle of a reconciliation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails.

    Also raised at registration time when a resource configuration names a
    field path that does not exist in the typed schema. Never recoverable at
    runtime.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_LOOKUP_TIMEOUT_SECONDS = 10.0
MIN_LOOKUP_TIMEOUT_SECONDS = 0.1
MAX_LOOKUP_TIMEOUT_SECONDS = 300.0

DEFAULT_CONNECTION_KEY_SEPARATOR = "."
CONNECTION_KEY_PREFIX = "attribute"

DEFAULT_MAX_TREE_DEPTH = 32
MAX_TREE_DEPTH_LIMIT = 256

# Overrides files are operator-authored YAML, never large
MAX_OVERRIDES_FILE_SIZE_BYTES = 1024 * 1024  # 1MB

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration, usually loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Deadline applied to each reference lookup against the object store
    lookup_timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT_SECONDS

    # Separator between flattened segments of sensitive connection keys
    connection_key_separator: str = DEFAULT_CONNECTION_KEY_SEPARATOR

    # Bound on nesting of observed attribute trees
    max_tree_depth: int = DEFAULT_MAX_TREE_DEPTH

    # Optional operator overrides layered onto registered resources
    overrides_file: Path | None = None

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_LOOKUP_TIMEOUT_SECONDS
            <= self.lookup_timeout_seconds
            <= MAX_LOOKUP_TIMEOUT_SECONDS
        ):
            errors.append(
                f"BRIDGE_LOOKUP_TIMEOUT_SECONDS must be between {MIN_LOOKUP_TIMEOUT_SECONDS} "
                f"and {MAX_LOOKUP_TIMEOUT_SECONDS} seconds"
            )

        separator = self.connection_key_separator
        if len(separator) != 1:
            errors.append("BRIDGE_CONNECTION_KEY_SEPARATOR must be a single character")
        elif separator.isalnum() or separator == "_":
            # Would collide with characters of attribute names
            errors.append(
                f"BRIDGE_CONNECTION_KEY_SEPARATOR cannot be a name character: {separator!r}"
            )

        if not (1 <= self.max_tree_depth <= MAX_TREE_DEPTH_LIMIT):
            errors.append(f"BRIDGE_MAX_TREE_DEPTH must be between 1 and {MAX_TREE_DEPTH_LIMIT}")

        if self.overrides_file is not None and not self.overrides_file.is_file():
            errors.append(f"Overrides file does not exist: {self.overrides_file}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"BRIDGE_LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            BRIDGE_LOOKUP_TIMEOUT_SECONDS: Deadline per reference lookup (default: 10)
            BRIDGE_CONNECTION_KEY_SEPARATOR: Separator in flattened secret keys (default: ".")
            BRIDGE_MAX_TREE_DEPTH: Maximum nesting of observed trees (default: 32)
            BRIDGE_OVERRIDES_FILE: YAML file with per-resource overrides (optional)
            BRIDGE_LOG_LEVEL: Root log level (default: INFO)
            BRIDGE_JSON_LOGS: If "false", log plain text instead of JSON (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        overrides = os.environ.get("BRIDGE_OVERRIDES_FILE")

        return cls(
            lookup_timeout_seconds=get_float(
                "BRIDGE_LOOKUP_TIMEOUT_SECONDS", DEFAULT_LOOKUP_TIMEOUT_SECONDS
            ),
            connection_key_separator=os.environ.get(
                "BRIDGE_CONNECTION_KEY_SEPARATOR", DEFAULT_CONNECTION_KEY_SEPARATOR
            ),
            max_tree_depth=get_int("BRIDGE_MAX_TREE_DEPTH", DEFAULT_MAX_TREE_DEPTH),
            overrides_file=Path(overrides) if overrides else None,
            log_level=os.environ.get("BRIDGE_LOG_LEVEL", "INFO"),
            json_logs=get_bool("BRIDGE_JSON_LOGS", True),
        )
