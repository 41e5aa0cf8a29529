"""
einvoice_consolidation -- Monthly consolidation of unvalidated documents.

Documents that were issued in a month but never validated individually
are bundled into one synthetic consolidated document per tenant and
submitted in a short window after the month closes.  Scheduling, retry
and expiry are tracked per (tenant, year, month) task.

Architecture:
    einvoice_consolidation/ is a top-level package.  It imports from
    einvoice_kernel, einvoice_config and the client contract of
    einvoice_submission.

    domain/    task types, calendar window arithmetic, document builder
    models/    ConsolidationTaskModel, TenantSettingsModel
    services/  ConsolidationScheduler, cancellation and status refresh
"""
