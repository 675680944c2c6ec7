"""
Configuration management for Kindred.

This module handles loading and accessing configuration values from config.yaml.
Only the command-line boundary reads it; pipeline components receive explicit
settings objects built from it (see GatewaySettings.from_config).
"""

import yaml
from pathlib import Path
from typing import Any, Dict
import logging


class ConfigManager:
    """
    Manages configuration loading and access for Kindred.
    """

    def __init__(self, config_path: str = "config.yaml"):
        """
        Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
        """
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if not self.config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._config = yaml.safe_load(f) or {}

            logging.info(f"Configuration loaded from {self.config_path}")

        except Exception as e:
            logging.error(f"Failed to load configuration: {e}")
            # Fall back to default configuration
            self._config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values as fallback."""
        return {
            "ai": {
                "backend": "anthropic",
                "models": {
                    "anthropic": "claude-3-5-sonnet-20241022",
                    "gemini": "gemini-2.0-flash-lite",
                    "ollama": "gemma3"
                },
                "ollama_host": "http://localhost:11434",
                "timeout": 60.0,
                "max_attempts": 3,
                "initial_retry_delay": 1.0,
                "max_retry_delay": 10.0,
                "temperature": 0.3,
                "max_tokens": 4000
            },
            "rate_limits": {
                "per_minute": 10,
                "per_hour": 100,
                "per_day": 500
            },
            "database": {
                "filename": "kindred.db"
            },
            "paths": {
                "log_file": "kindred.log"
            },
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "extraction": {
                "user_id": "local-user",
                "prompt_strategy": "standard",
                "min_story_length": 10,
                "roster_limit": 200
            }
        }

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the configuration value (e.g., "ai.timeout")
            default: Default value if key is not found

        Returns:
            The configuration value

        Examples:
            config.get("ai.backend")  # Returns "anthropic"
            config.get("rate_limits.per_minute")  # Returns 10
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get an entire configuration section.

        Args:
            section: Name of the configuration section

        Returns:
            Dictionary containing the section configuration
        """
        return self._config.get(section, {})

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()

    # Convenience properties for commonly used values

    @property
    def backend(self) -> str:
        """Get the default model backend."""
        return self.get("ai.backend", "anthropic")

    @property
    def ai_timeout(self) -> float:
        """Get the per-attempt model call timeout."""
        return self.get("ai.timeout", 60.0)

    @property
    def database_filename(self) -> str:
        """Get database filename."""
        return self.get("database.filename", "kindred.db")

    @property
    def log_filename(self) -> str:
        """Get log file name."""
        return self.get("paths.log_file", "kindred.log")

    @property
    def user_id(self) -> str:
        """Get the owner id used for every record."""
        return self.get("extraction.user_id", "local-user")

    @property
    def prompt_strategy(self) -> str:
        return self.get("extraction.prompt_strategy", "standard")

    @property
    def min_story_length(self) -> int:
        return self.get("extraction.min_story_length", 10)

    @property
    def roster_limit(self) -> int:
        """Get the maximum number of people sent with a prompt."""
        return self.get("extraction.roster_limit", 200)


# Global configuration instance
config = ConfigManager()


def get_config() -> ConfigManager:
    """
    Get the global configuration instance.

    Returns:
        The global ConfigManager instance
    """
    return config
