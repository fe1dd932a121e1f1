#!/usr/bin/env python3
"""
Configuration Manager for wormhole

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import os
import re
from typing import Any, Dict, Optional

import yaml

from wormhole.error_utils import ConfigValidationError, create_config_error
from wormhole.logging_utils import get_logger

logger = get_logger(__name__)


class ConfigManager:
    """Manages configuration for registry-to-registry image migrations"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to ../config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "../config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "source": {"url": "localhost:5000", "insecure": False, "tls_verify": True},
            "destination": {"url": "localhost:5001", "insecure": False, "tls_verify": True},
            "registry": {
                "timeout": 300,  # Per-request timeout in seconds
                "chunk_size": 1024 * 1024,  # Bytes per streamed upload chunk
            },
            "transfer": {
                "rate_limit": None,  # Global bytes/sec budget, divided across workers
                "pool_size": None,  # None = logical CPU count
                "queue_size": 0,  # 0 = unbounded backlog
            },
            "analysis": {"output_dir": "reports"},
            "security": {"dry_run_by_default": True, "require_confirmation": True},
            "reports": {"migration": "migration-report.json"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                return self._merge_config(default_config, user_config)
            else:
                logger.warning(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config file: {e}")
            return default_config

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    # Registry configuration
    def get_source_registry_url(self) -> str:
        """Get source registry URL from environment or config"""
        return os.environ.get("SOURCE_REGISTRY_URL") or self.config["source"]["url"]

    def get_dest_registry_url(self) -> str:
        """Get destination registry URL from environment or config"""
        return os.environ.get("DEST_REGISTRY_URL") or self.config["destination"]["url"]

    def is_source_insecure(self) -> bool:
        """Whether the source registry is served over plain HTTP"""
        return bool(self.config["source"].get("insecure", False))

    def is_dest_insecure(self) -> bool:
        """Whether the destination registry is served over plain HTTP"""
        return bool(self.config["destination"].get("insecure", False))

    def get_source_tls_verify(self) -> bool:
        return bool(self.config["source"].get("tls_verify", True))

    def get_dest_tls_verify(self) -> bool:
        return bool(self.config["destination"].get("tls_verify", True))

    def get_registry_timeout(self) -> int:
        """Get per-request registry timeout from config, with type coercion"""
        timeout = self.config.get("registry", {}).get("timeout", 300)
        try:
            return int(timeout)
        except (ValueError, TypeError):
            raise create_config_error("registry.timeout", timeout, "must be an integer")

    def get_chunk_size(self) -> int:
        """Get streamed upload chunk size from config, with type coercion"""
        size = self.config.get("registry", {}).get("chunk_size", 1024 * 1024)
        try:
            return int(size)
        except (ValueError, TypeError):
            raise create_config_error("registry.chunk_size", size, "must be an integer")

    # Transfer configuration
    def get_rate_limit(self) -> Optional[float]:
        """Get the global transfer rate limit in bytes/sec (None = unthrottled).

        Priority: env TRANSFER_RATE_LIMIT -> config.transfer.rate_limit
        """
        value = os.environ.get("TRANSFER_RATE_LIMIT")
        if value is None:
            value = self.config.get("transfer", {}).get("rate_limit")
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            raise create_config_error("transfer.rate_limit", value, "must be a number")

    def get_pool_size(self) -> Optional[int]:
        """Get worker pool size from config (None = logical CPU count)"""
        size = self.config.get("transfer", {}).get("pool_size")
        if size is None:
            return None
        try:
            return int(size)
        except (ValueError, TypeError):
            raise create_config_error("transfer.pool_size", size, "must be an integer")

    def get_queue_size(self) -> int:
        """Get worker pool backlog bound from config (0 = unbounded)"""
        size = self.config.get("transfer", {}).get("queue_size", 0)
        try:
            return int(size)
        except (ValueError, TypeError):
            raise create_config_error("transfer.queue_size", size, "must be an integer")

    def get_output_dir(self) -> str:
        """Get output directory from environment or config"""
        return os.environ.get("OUTPUT_DIR") or self.config["analysis"]["output_dir"]

    # Report configuration
    def _resolve_report_path(self, path: str) -> str:
        """Resolve report file path under the configured output_dir unless absolute or already a path.
        If the value is just a filename, prefix it with output_dir.
        """
        if os.path.isabs(path) or os.path.basename(path) != path:
            return path
        return os.path.join(self.get_output_dir(), path)

    def get_migration_report_path(self) -> str:
        return self._resolve_report_path(self.config["reports"]["migration"])

    # Security configuration
    def is_dry_run_by_default(self) -> bool:
        return self.config.get("security", {}).get("dry_run_by_default", True)

    def requires_confirmation(self) -> bool:
        return self.config.get("security", {}).get("require_confirmation", True)

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        for label, url in (
            ("Source", self.get_source_registry_url()),
            ("Destination", self.get_dest_registry_url()),
        ):
            if not url or not url.strip():
                errors.append(f"{label} registry URL is required and cannot be empty")
            elif not self._is_valid_registry_url(url):
                warnings.append(f"{label} registry URL '{url}' may be invalid (expected format: hostname[:port])")

        if self.get_source_registry_url() == self.get_dest_registry_url():
            warnings.append("Source and destination registries are identical; every image will be skipped")

        timeout = self.get_registry_timeout()
        if timeout < 1:
            errors.append(f"registry.timeout must be a positive integer (seconds), got: {timeout}")
        elif timeout > 3600:
            warnings.append(f"registry.timeout is very high ({timeout}s), stalled transfers may hang for a long time")

        chunk_size = self.get_chunk_size()
        if chunk_size < 1:
            errors.append(f"registry.chunk_size must be a positive integer, got: {chunk_size}")

        rate_limit = self.get_rate_limit()
        if rate_limit is not None and rate_limit <= 0:
            errors.append(f"transfer.rate_limit must be a positive number of bytes/sec, got: {rate_limit}")

        pool_size = self.get_pool_size()
        if pool_size is not None:
            if pool_size < 1:
                errors.append(f"transfer.pool_size must be a positive integer, got: {pool_size}")
            elif pool_size > 100:
                warnings.append(f"transfer.pool_size is very high ({pool_size}), this may cause resource issues")

        queue_size = self.get_queue_size()
        if queue_size < 0:
            errors.append(f"transfer.queue_size must be a non-negative integer, got: {queue_size}")

        output_dir = self.get_output_dir()
        if not output_dir or not output_dir.strip():
            errors.append("output_dir is required and cannot be empty")

        # Log warnings
        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")

        # Raise error if there are validation errors
        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logger.error(error_msg)
            raise ConfigValidationError(error_msg)

    def _is_valid_registry_url(self, url: str) -> bool:
        """Validate registry URL format"""
        if not url:
            return False

        # Remove protocol if present
        url = url.replace("http://", "").replace("https://", "")

        pattern = r"^[a-zA-Z0-9]([a-zA-Z0-9\-\.]*[a-zA-Z0-9])?(:[0-9]{1,5})?$"
        return bool(re.match(pattern, url))

    def print_config(self):
        """Print current configuration"""
        rate_limit = self.get_rate_limit()
        print("Current Configuration:")
        print(f"  Source Registry: {self.get_source_registry_url()}")
        print(f"  Destination Registry: {self.get_dest_registry_url()}")
        print(f"  Registry Timeout: {self.get_registry_timeout()}")
        print(f"  Rate Limit: {f'{rate_limit:.0f} B/s' if rate_limit else 'Unthrottled'}")
        print(f"  Pool Size: {self.get_pool_size() or 'CPU count'}")
        print(f"  Queue Size: {self.get_queue_size() or 'Unbounded'}")
        print(f"  Output Directory: {self.get_output_dir()}")
        print(f"  Dry Run Default: {self.is_dry_run_by_default()}")
        print(f"  Require Confirmation: {self.requires_confirmation()}")


# Global config manager instance
# Validation can be disabled by setting SKIP_CONFIG_VALIDATION=true environment variable
# This is useful for testing or when you know the config is valid
config_manager = ConfigManager(
    validate=os.environ.get("SKIP_CONFIG_VALIDATION", "").lower() not in ("true", "1", "yes")
)
