"""
Error types and actionable error messages for registry migrations.

Every failure the migration engine sees comes from the registry client. They are
classified into categories for reporting, but the engine treats all of them as
terminal for the step that raised them.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    PROTOCOL = "protocol"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\nAdditional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class RegistryError(ActionableError):
    """Raised by the registry client for any failed registry operation."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 registry_url: Optional[str] = None, status_code: Optional[int] = None,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        self.registry_url = registry_url
        self.status_code = status_code
        super().__init__(message, category=category, suggestions=suggestions, details=details)


class MigrationCancelledError(ActionableError):
    """Raised inside a migration when the pool's cancel event has been set."""

    def __init__(self, message: str = "Migration cancelled"):
        super().__init__(message, category=ErrorCategory.CANCELLED)


class ConfigValidationError(ActionableError):
    """Raised when configuration values are missing or malformed."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, suggestions=suggestions, details=details)


class PoolStateError(RuntimeError):
    """Raised when the worker pool is used outside the state that allows it."""


def create_registry_connection_error(registry_url: str, error: Exception) -> RegistryError:
    """Create actionable error for registry connection failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify the registry URL is correct: {registry_url}",
        "Check network connectivity to the registry",
        "Verify firewall rules allow access to the registry",
        "Check if the registry service is running",
    ]

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if the registry is experiencing high load")
        suggestions.insert(2, "Increase registry.timeout in config.yaml")

    if "name resolution" in error_str or "dns" in error_str:
        suggestions.insert(1, "Verify DNS resolution for the registry hostname")

    if "ssl" in error_str or "certificate" in error_str:
        suggestions.insert(1, "Set tls_verify: false for registries with self-signed certificates")
        suggestions.insert(2, "Set insecure: true for registries served over plain HTTP")

    return RegistryError(
        message=f"Failed to connect to Docker registry at {registry_url}",
        category=ErrorCategory.CONNECTION,
        registry_url=registry_url,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_registry_auth_error(registry_url: str, operation: str, status_code: int) -> RegistryError:
    """Create actionable error for requests the registry refused (401/403)"""
    suggestions = [
        "Verify the registry allows anonymous pull/push for this repository",
        "Check the registry's access control configuration",
        "Verify the repository name is spelled correctly",
    ]

    if "amazonaws.com" in registry_url:
        suggestions.insert(0, "ECR requires authenticated access; use a registry proxy that injects credentials")

    return RegistryError(
        message=f"Registry {registry_url} refused {operation} (HTTP {status_code})",
        category=ErrorCategory.AUTHENTICATION,
        registry_url=registry_url,
        status_code=status_code,
        suggestions=suggestions,
        details={"registry_url": registry_url, "operation": operation, "status_code": status_code},
    )


def create_registry_response_error(registry_url: str, operation: str, status_code: int,
                                   body: str = "") -> RegistryError:
    """Create actionable error for unexpected registry responses"""
    suggestions = ["Check the registry logs for the failed request"]

    if status_code == 404:
        suggestions.insert(0, "Verify the repository and reference exist in the registry")
    elif status_code >= 500:
        suggestions.insert(0, "The registry reported a server error; re-run the migration once it recovers")
    elif status_code in (400, 415):
        suggestions.insert(0, "The registry may not support this manifest media type")

    return RegistryError(
        message=f"Registry {registry_url} returned HTTP {status_code} for {operation}",
        category=ErrorCategory.RESOURCE,
        registry_url=registry_url,
        status_code=status_code,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "operation": operation,
            "status_code": status_code,
            "response": body[:300],
        },
    )


def create_config_error(field: str, value: Any, reason: str) -> ConfigValidationError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Check the config-example.yaml for correct format",
    ]

    if "url" in field.lower():
        suggestions.insert(1, "URL should be in format: hostname[:port]")
    elif "rate" in field.lower():
        suggestions.insert(1, "Rate limits are bytes per second and must be positive")
    elif "timeout" in field.lower() or "size" in field.lower():
        suggestions.insert(1, "Values must be positive numbers")

    return ConfigValidationError(
        message=f"Configuration error: Invalid value for '{field}'",
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
