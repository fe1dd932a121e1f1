"""
Health check utilities for verifying registry connectivity and configuration.

This module provides pre-flight checks for:
- Configuration validity
- Source registry connectivity
- Destination registry connectivity
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from wormhole.error_utils import ActionableError, create_registry_connection_error
from wormhole.logging_utils import get_logger
from wormhole.registry_client import RegistryClient

logger = get_logger(__name__)

# /v2/ answers 401 on registries that require a token; the API is still reachable
REACHABLE_STATUSES = (200, 401)


@dataclass
class HealthCheckResult:
    """Result of a health check"""

    name: str
    status: bool  # True if healthy, False if unhealthy
    message: str
    details: Optional[Dict] = None


class HealthChecker:
    """Performs health checks against the source and destination registries"""

    def __init__(self, source: RegistryClient, destination: RegistryClient, config_manager=None):
        self.source = source
        self.destination = destination
        self.config_manager = config_manager
        self.logger = get_logger(self.__class__.__name__)

    def check_registry_connectivity(self, name: str, client: RegistryClient) -> HealthCheckResult:
        """Check that a registry answers the v2 API base endpoint

        Returns:
            HealthCheckResult indicating registry connectivity status
        """
        self.logger.info(f"Checking registry connectivity at {client.registry_url}")
        try:
            status_code = client.ping()
        except ActionableError as e:
            return HealthCheckResult(
                name=name,
                status=False,
                message=e.message,
                details={"registry_url": client.registry_url, "error": str(e), "suggestions": e.suggestions},
            )
        except Exception as e:
            actionable_error = create_registry_connection_error(client.registry_url, e)
            return HealthCheckResult(
                name=name,
                status=False,
                message=actionable_error.message,
                details={"registry_url": client.registry_url, "error": str(e)},
            )

        if status_code in REACHABLE_STATUSES:
            return HealthCheckResult(
                name=name,
                status=True,
                message=f"Successfully connected to registry {client.registry_url}",
                details={"registry_url": client.registry_url, "status_code": status_code},
            )

        return HealthCheckResult(
            name=name,
            status=False,
            message=f"Registry {client.registry_url} does not speak the v2 API (HTTP {status_code})",
            details={"registry_url": client.registry_url, "status_code": status_code},
        )

    def check_configuration(self) -> HealthCheckResult:
        """Check if configuration is valid"""
        if self.config_manager is None:
            return HealthCheckResult(name="configuration", status=True, message="No configuration to validate")

        try:
            # This will raise ConfigValidationError if invalid
            self.config_manager.validate_config()

            return HealthCheckResult(
                name="configuration",
                status=True,
                message="Configuration is valid",
                details={
                    "source_registry": self.config_manager.get_source_registry_url(),
                    "dest_registry": self.config_manager.get_dest_registry_url(),
                },
            )
        except Exception as e:
            return HealthCheckResult(
                name="configuration",
                status=False,
                message=f"Configuration validation failed: {str(e)}",
                details={"error": str(e)},
            )

    def run_all_checks(self) -> List[HealthCheckResult]:
        """Run all health checks

        Returns:
            List of HealthCheckResult objects
        """
        return [
            self.check_configuration(),
            self.check_registry_connectivity("source_registry", self.source),
            self.check_registry_connectivity("destination_registry", self.destination),
        ]

    def print_health_report(self, results: List[HealthCheckResult]) -> bool:
        """Print a formatted health check report

        Args:
            results: List of HealthCheckResult objects

        Returns:
            True if all checks passed, False otherwise
        """
        print("\n" + "=" * 60)
        print("Health Check Report")
        print("=" * 60)

        all_healthy = True

        for result in results:
            status_icon = "✓" if result.status else "✗"
            status_text = "HEALTHY" if result.status else "UNHEALTHY"

            print(f"\n{status_icon} {result.name.upper().replace('_', ' ')}: {status_text}")
            print(f"   {result.message}")

            if result.details:
                for key, value in result.details.items():
                    if key != "error":  # Don't print error in details if it's already in message
                        print(f"   {key}: {value}")

            if not result.status:
                all_healthy = False

        print("\n" + "=" * 60)

        if all_healthy:
            print("✓ All health checks passed")
        else:
            print("✗ Some health checks failed - please review the issues above")

        print("=" * 60 + "\n")

        return all_healthy
