"""
einvoice_config -- single public entrypoint for runtime configuration.

Responsibility:
    ``get_settings()`` is the only way services obtain configuration.
    It reads the YAML file named by its argument or by the
    ``EINVOICE_CONFIG`` environment variable and returns a frozen
    ``EInvoiceSettings``.  With neither, built-in defaults are returned
    (no tenants configured).

Failure modes:
    - ``FileNotFoundError`` -- the named configuration file does not exist.
    - ``InvalidConfigurationError`` -- malformed YAML or missing keys.
    - ``TenantNotConfiguredError`` -- raised later by
      ``EInvoiceSettings.tenant()`` for an unknown tenant.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from einvoice_config.loader import load_settings, parse_settings
from einvoice_config.schema import (
    ConsolidationPolicy,
    EInvoiceSettings,
    PollingPolicy,
    TenantApiConfig,
)

_logger = logging.getLogger("einvoice.config")

CONFIG_ENV_VAR = "EINVOICE_CONFIG"


def get_settings(path: Path | str | None = None) -> EInvoiceSettings:
    """Load the active configuration.

    Args:
        path: Explicit configuration file.  Falls back to ``$EINVOICE_CONFIG``.
    """
    source = path or os.environ.get(CONFIG_ENV_VAR)
    if not source:
        settings = EInvoiceSettings()
        _logger.info("config_defaults_used")
        return settings

    settings = load_settings(Path(source))
    _logger.info(
        "config_loaded",
        extra={
            "source": str(source),
            "tenants": list(settings.tenant_ids),
            "max_poll_attempts": settings.polling.max_attempts,
            "retry_days": settings.consolidation.retry_days,
        },
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "ConsolidationPolicy",
    "EInvoiceSettings",
    "PollingPolicy",
    "TenantApiConfig",
    "get_settings",
    "load_settings",
    "parse_settings",
]
