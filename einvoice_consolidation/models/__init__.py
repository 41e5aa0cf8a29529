"""ORM models for consolidation tasks and tenant settings."""

from einvoice_consolidation.models.consolidation import (
    ConsolidationTaskModel,
    TenantSettingsModel,
)

__all__ = [
    "ConsolidationTaskModel",
    "TenantSettingsModel",
]
