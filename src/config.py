"""
Configuration loader for the project ledger.

Loads settings from projectledger.yaml and provides typed access to the
api, logging and allocations sections.  The PROJECTLEDGER_CONFIG
environment variable points at another file.
"""
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional

import yaml


# Default config path relative to project root
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "projectledger.yaml"
CONFIG_ENV_VAR = "PROJECTLEDGER_CONFIG"


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""
    pass


class AppConfig:
    """
    Configuration manager for the project ledger.

    An explicitly requested file must exist.  When the default file is
    missing the built-in defaults apply.
    Use get_config() to obtain the shared instance.
    """

    def __init__(self, config_path: Optional[Path] = None):
        self._explicit = config_path is not None
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        self._config: dict = {}
        self._load()

    def _load(self) -> None:
        """Load configuration from YAML file."""
        if not self._config_path.exists():
            if self._explicit:
                raise ConfigurationError(f"Config file not found: {self._config_path}")
            self._config = {}
            return

        try:
            with open(self._config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Config file must contain a YAML mapping")
        self._config = data

    @property
    def path(self) -> Path:
        return self._config_path

    @property
    def version(self) -> str:
        """Configuration file version."""
        return str(self._config.get("version", "unknown"))

    def _section(self, name: str) -> dict:
        section = self._config.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        return section

    # =========================================================================
    # API
    # =========================================================================

    @property
    def api_title(self) -> str:
        return self._section("api").get("title", "Project Ledger API")

    @property
    def cors_origins(self) -> List[str]:
        """Origins allowed by the CORS middleware."""
        origins = self._section("api").get("cors_origins", ["*"])
        if isinstance(origins, str):
            return [origins]
        return list(origins)

    @property
    def mcp_enabled(self) -> bool:
        """Whether the routes are also mounted as MCP tools."""
        return bool(self._section("api").get("mcp_enabled", True))

    # =========================================================================
    # Logging
    # =========================================================================

    @property
    def log_level(self) -> str:
        return str(self._section("logging").get("level", "INFO")).upper()

    @property
    def log_format(self) -> str:
        return self._section("logging").get(
            "format", "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        )

    # =========================================================================
    # Allocations
    # =========================================================================

    @property
    def rounding_places(self) -> int:
        """Decimal places kept when allocation feeds are built."""
        places = self._section("allocations").get("rounding_places", 3)
        if not isinstance(places, int) or isinstance(places, bool) or places < 0:
            raise ConfigurationError("allocations.rounding_places must be a non-negative integer")
        return places

    @property
    def balance_tolerance(self) -> Decimal:
        """Largest real-vs-submitted monthly difference still counted as balanced."""
        value = self._section("allocations").get("balance_tolerance", "0.001")
        try:
            return Decimal(str(value))
        except ArithmeticError:
            raise ConfigurationError(f"allocations.balance_tolerance is not a number: {value!r}")

    @property
    def require_balanced_totals(self) -> bool:
        """Refuse to save allocation edits that leave a month unbalanced."""
        return bool(self._section("allocations").get("require_balanced_totals", True))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw top-level config value."""
        return self._config.get(key, default)


@lru_cache(maxsize=1)
def get_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Get the shared configuration instance.

    Args:
        config_path: Optional path to config file.  Falls back to
            $PROJECTLEDGER_CONFIG, then to the default file.
    """
    path = config_path or os.environ.get(CONFIG_ENV_VAR)
    return AppConfig(Path(path) if path else None)


def reload_config() -> AppConfig:
    """Reload configuration from disk and return new instance."""
    get_config.cache_clear()
    return get_config()
