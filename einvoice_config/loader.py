"""
Configuration Loader (``einvoice_config.loader``).

Responsibility
--------------
Loads the YAML configuration file and parses it into the frozen
dataclasses of ``einvoice_config.schema``.  Services never call this
directly; the runtime entry point is ``einvoice_config.get_settings()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML or wrong shapes  -> ``InvalidConfigurationError``.
* ``${VAR}`` secret with no such environment variable  ->
  ``InvalidConfigurationError``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from einvoice_config.schema import (
    ConsolidationPolicy,
    EInvoiceSettings,
    PollingPolicy,
    TenantApiConfig,
)
from einvoice_kernel.exceptions import InvalidConfigurationError

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        InvalidConfigurationError: if the YAML is invalid or not a mapping.
    """
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise InvalidConfigurationError(str(exc), source=str(path)) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidConfigurationError("top level must be a mapping", source=str(path))
    return data


def expand_env(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Replace a ``${VAR}`` string with the environment variable's value."""
    if not isinstance(value, str):
        return value
    match = _ENV_REF.match(value.strip())
    if match is None:
        return value
    env = os.environ if environ is None else environ
    name = match.group(1)
    if name not in env:
        raise InvalidConfigurationError(f"environment variable {name} is not set")
    return env[name]


def parse_polling(data: dict[str, Any] | None) -> PollingPolicy:
    data = data or {}
    defaults = PollingPolicy()
    try:
        return PollingPolicy(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            interval_seconds=float(
                data.get("interval_seconds", defaults.interval_seconds)
            ),
            initial_delay_seconds=float(
                data.get("initial_delay_seconds", defaults.initial_delay_seconds)
            ),
            assume_valid_after_attempts=int(
                data.get(
                    "assume_valid_after_attempts",
                    defaults.assume_valid_after_attempts,
                )
            ),
        )
    except (TypeError, ValueError) as exc:
        raise InvalidConfigurationError(f"polling: {exc}") from exc


def parse_consolidation(data: dict[str, Any] | None) -> ConsolidationPolicy:
    data = data or {}
    defaults = ConsolidationPolicy()
    try:
        policy = ConsolidationPolicy(
            offset_days=int(data.get("offset_days", defaults.offset_days)),
            retry_days=int(data.get("retry_days", defaults.retry_days)),
            timezone=str(data.get("timezone", defaults.timezone)),
            stale_claim_minutes=int(
                data.get("stale_claim_minutes", defaults.stale_claim_minutes)
            ),
        )
        policy.tz  # validate the zone name
    except (TypeError, ValueError, KeyError) as exc:
        raise InvalidConfigurationError(f"consolidation: {exc}") from exc
    return policy


def parse_tenant(
    data: dict[str, Any], environ: Mapping[str, str] | None = None,
) -> TenantApiConfig:
    try:
        return TenantApiConfig(
            tenant_id=str(data["tenant_id"]),
            api_base_url=str(expand_env(data["api_base_url"], environ)).rstrip("/"),
            client_id=str(expand_env(data["client_id"], environ)),
            client_secret=str(expand_env(data["client_secret"], environ)),
            request_timeout_seconds=float(data.get("request_timeout_seconds", 30.0)),
        )
    except KeyError as exc:
        raise InvalidConfigurationError(
            f"tenant entry missing required key {exc.args[0]!r}"
        ) from exc


def parse_settings(
    data: dict[str, Any], environ: Mapping[str, str] | None = None,
) -> EInvoiceSettings:
    """Parse a raw configuration mapping into ``EInvoiceSettings``."""
    tenants_raw = data.get("tenants") or []
    if not isinstance(tenants_raw, list):
        raise InvalidConfigurationError("tenants must be a list")

    tenants = tuple(parse_tenant(t, environ) for t in tenants_raw)
    seen: set[str] = set()
    for tenant in tenants:
        if tenant.tenant_id in seen:
            raise InvalidConfigurationError(
                f"duplicate tenant_id {tenant.tenant_id!r}"
            )
        seen.add(tenant.tenant_id)

    defaults = EInvoiceSettings()
    return EInvoiceSettings(
        database_url=str(
            expand_env(data.get("database_url", defaults.database_url), environ)
        ),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
        polling=parse_polling(data.get("polling")),
        consolidation=parse_consolidation(data.get("consolidation")),
        tenants=tenants,
    )


def load_settings(
    path: Path, environ: Mapping[str, str] | None = None,
) -> EInvoiceSettings:
    """Load and parse the configuration file at ``path``."""
    return parse_settings(load_yaml_file(path), environ)
