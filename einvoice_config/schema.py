"""
Configuration schema (``einvoice_config.schema``).

Frozen dataclasses for every configuration artifact.  Parsed by
``einvoice_config.loader`` from YAML; consumed by the submission and
consolidation services.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from zoneinfo import ZoneInfo

from einvoice_kernel.exceptions import TenantNotConfiguredError


@dataclass(frozen=True)
class PollingPolicy:
    """Bounded polling schedule for one submission.

    ``assume_valid_after_attempts`` is the workaround for an upstream
    service that keeps reporting ``Submitted`` long after validation: once
    that many attempts have elapsed with every document ``Submitted`` the
    engine reports the batch as valid.  Set it above ``max_attempts`` to
    disable the coercion.
    """

    max_attempts: int = 10
    interval_seconds: float = 5.0
    initial_delay_seconds: float = 0.3
    assume_valid_after_attempts: int = 9

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.interval_seconds < 0 or self.initial_delay_seconds < 0:
            raise ValueError("Polling delays must be non-negative")

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound on the time spent sleeping by one poll."""
        return self.max_attempts * self.interval_seconds + self.initial_delay_seconds


@dataclass(frozen=True)
class ConsolidationPolicy:
    """Monthly consolidation timing.

    The task for a month is first attempted ``offset_days`` after the
    month's last day and may be retried until ``retry_days`` after it.
    A task left ``processing`` for longer than ``stale_claim_minutes`` (its
    run died between claim and completion) is handed back to ``pending``.
    """

    offset_days: int = 1
    retry_days: int = 7
    timezone: str = "Asia/Kuala_Lumpur"
    stale_claim_minutes: int = 120

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class TenantApiConfig:
    """Validation-service credentials for one tenant."""

    tenant_id: str
    api_base_url: str
    client_id: str
    client_secret: str = field(repr=False)
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class EInvoiceSettings:
    """Root configuration object."""

    database_url: str = "sqlite:///einvoice.db"
    log_level: str = "INFO"
    polling: PollingPolicy = field(default_factory=PollingPolicy)
    consolidation: ConsolidationPolicy = field(default_factory=ConsolidationPolicy)
    tenants: tuple[TenantApiConfig, ...] = ()

    def tenant(self, tenant_id: str) -> TenantApiConfig:
        """Look up a tenant's API configuration.

        Raises:
            TenantNotConfiguredError: If the tenant is not configured.
        """
        for tenant in self.tenants:
            if tenant.tenant_id == tenant_id:
                return tenant
        raise TenantNotConfiguredError(tenant_id)

    @property
    def tenant_ids(self) -> tuple[str, ...]:
        return tuple(t.tenant_id for t in self.tenants)
