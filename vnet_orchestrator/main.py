#!/usr/bin/env python3
"""
VNet-to-VNet VPN gateway sample - Main Entry Point

Environment:
- CLIENT_ID, CLIENT_SECRET, TENANT_ID, SUBSCRIPTION_ID: service principal (azure provider)
- VNET_PROVIDER: "azure" (default) or "simulated"
- VNET_SHARED_KEY and the other VNET_* / VM_* options read by PlanConfig.from_env
- OPERATION_TIMEOUT: bound in seconds for every long-running wait
- DB_DIR: where the simulated provider keeps its SQLite database
- LOG_DIR, REPORT_PATH: optional log file directory and JSON run report
"""

import logging
import os
import sys

from .config import AzureCredentials, PlanConfig, operation_timeout_from_env
from .errors import ConfigurationError, OrchestratorError
from .progress import ProgressLogger, configure_logging
from .sample import run_sample

logger = logging.getLogger("vnet_orchestrator")


def create_provider(kind: str = None):
    """Build an authenticated provider from the environment."""
    kind = (kind or os.getenv("VNET_PROVIDER", "azure")).lower()
    timeout = operation_timeout_from_env()

    if kind == "simulated":
        from .providers.simulated import SimulatedProvider

        db_dir = os.getenv("DB_DIR")
        url = f"sqlite:///{os.path.join(db_dir, 'vnet_simulator.db')}" if db_dir else "sqlite:///:memory:"
        return SimulatedProvider(database_url=url)

    if kind == "azure":
        from .providers.azure import AzureProvider

        return AzureProvider.from_credentials(AzureCredentials.from_env(), operation_timeout=timeout)

    raise ConfigurationError(f"Unknown provider {kind!r}; expected 'azure' or 'simulated'")


def main() -> int:
    configure_logging()
    print("=" * 60)
    print("  VNet-to-VNet VPN Gateway Sample")
    print("=" * 60)

    progress = ProgressLogger()
    try:
        provider = create_provider()
        config = PlanConfig.from_env()
        report = run_sample(provider, config, progress, teardown_timeout=operation_timeout_from_env())
    except OrchestratorError as e:
        progress.log_error(f"Sample failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Sample failed unexpectedly: {e}")
        return 1
    finally:
        progress.generate_report(os.getenv("REPORT_PATH"))

    if report.troubleshooting is not None:
        logger.info(
            f"Troubleshooting: {report.troubleshooting.initial.code} -> {report.troubleshooting.final.code}"
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
