#!/usr/bin/env python3
"""
Run the monthly consolidation scheduler once, or manage a consolidated document.

Reads tenants, credentials and policies from the YAML file named by
--config or $EINVOICE_CONFIG.

Usage:
    python3 scripts/run_consolidation.py [--config <path>] [options]

Examples:
    # One scheduler tick: plan next month, run every due task
    python3 scripts/run_consolidation.py --config config/einvoice.yaml

    # Only create next month's tasks
    python3 scripts/run_consolidation.py --schedule-only

    # Turn auto-consolidation on for a tenant
    python3 scripts/run_consolidation.py --tenant acme --enable

    # Cancel a consolidated document, or re-check its status
    python3 scripts/run_consolidation.py --tenant acme --cancel CON-202601-AUTO
    python3 scripts/run_consolidation.py --tenant acme --refresh CON-202601-AUTO

    # List what January would bundle, then consolidate two of them by hand
    python3 scripts/run_consolidation.py --tenant acme --eligible 2026-01
    python3 scripts/run_consolidation.py --tenant acme --consolidate 2026-01 \
        --documents INV-1001 INV-1002

    # Consolidated documents issued in 2026
    python3 scripts/run_consolidation.py --tenant acme --history 2026
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _period(value: str) -> tuple[int, int]:
    try:
        year, month = (int(part) for part in value.split("-", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}") from None
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {value!r}")
    return year, month


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run e-invoice consolidation: schedule -> run due tasks.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration YAML (default: $EINVOICE_CONFIG).",
    )
    parser.add_argument(
        "--tenant",
        action="append",
        default=None,
        help="Restrict to this tenant. May be repeated.",
    )
    parser.add_argument(
        "--schedule-only",
        action="store_true",
        help="Create next month's tasks and exit without running due tasks.",
    )
    toggle = parser.add_mutually_exclusive_group()
    toggle.add_argument(
        "--enable",
        action="store_true",
        help="Enable auto-consolidation for --tenant.",
    )
    toggle.add_argument(
        "--disable",
        action="store_true",
        help="Disable auto-consolidation for --tenant.",
    )
    toggle.add_argument(
        "--cancel",
        metavar="DOCUMENT_NUMBER",
        help="Cancel a consolidated document for --tenant.",
    )
    toggle.add_argument(
        "--refresh",
        metavar="DOCUMENT_NUMBER",
        help="Re-check a consolidated document's status for --tenant.",
    )
    toggle.add_argument(
        "--eligible",
        metavar="YYYY-MM",
        type=_period,
        help="List documents of --tenant eligible for consolidation in a month.",
    )
    toggle.add_argument(
        "--consolidate",
        metavar="YYYY-MM",
        type=_period,
        help="Consolidate the --documents of --tenant for a month now.",
    )
    toggle.add_argument(
        "--history",
        metavar="YEAR",
        nargs="?",
        type=int,
        const=0,
        help="List consolidated documents of --tenant, optionally for one year.",
    )
    parser.add_argument(
        "--documents",
        nargs="+",
        default=(),
        metavar="DOCUMENT_NUMBER",
        help="Documents to bundle with --consolidate.",
    )
    parser.add_argument(
        "--reason",
        default=None,
        help="Cancellation reason sent to the validation service.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level.",
    )
    return parser.parse_args(argv)


def _single_tenant(args: argparse.Namespace) -> str:
    if not args.tenant or len(args.tenant) != 1:
        print("Exactly one --tenant is required for this action.", file=sys.stderr)
        sys.exit(2)
    return args.tenant[0]


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from einvoice_config import get_settings
    from einvoice_consolidation.services import (
        ConsolidationCancellationService,
        ConsolidationScheduler,
        ConsolidationStatusService,
    )
    from einvoice_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from einvoice_kernel.exceptions import EInvoiceError
    from einvoice_kernel.logging_config import configure_logging
    from einvoice_submission.client.http import HttpValidationApiClient

    settings = get_settings(args.config)
    configure_logging(level="DEBUG" if args.verbose else settings.log_level)

    init_engine_from_url(settings.database_url)
    create_tables()
    session_factory = get_session_factory()

    def client_factory(tenant_id: str) -> HttpValidationApiClient:
        return HttpValidationApiClient(settings.tenant(tenant_id))

    try:
        if args.enable or args.disable:
            tenant_id = _single_tenant(args)
            scheduler = ConsolidationScheduler(session_factory, client_factory)
            result = scheduler.set_auto_consolidation(
                tenant_id, args.enable, actor="cli",
            )
            state = "enabled" if result.auto_consolidation_enabled else "disabled"
            print(f"Auto-consolidation {state} for {tenant_id}")
            return 0

        if args.cancel:
            tenant_id = _single_tenant(args)
            service = ConsolidationCancellationService(session_factory, client_factory)
            cancelled = service.cancel_consolidation(tenant_id, args.cancel, args.reason)
            print(
                f"Cancelled {cancelled.document_number}: "
                f"{len(cancelled.reset_documents)} document(s) reset, "
                f"remote={'ok' if cancelled.remote_cancelled else cancelled.remote_error}"
            )
            for warning in cancelled.warnings:
                print(f"  warning: {warning}")
            return 0

        scheduler = ConsolidationScheduler(
            session_factory,
            client_factory,
            policy=settings.consolidation,
            polling=settings.polling,
        )

        if args.eligible:
            tenant_id = _single_tenant(args)
            year, month = args.eligible
            eligible = scheduler.list_eligible_documents(tenant_id, year, month)
            print(f"{len(eligible)} eligible document(s) for {year}-{month:02d}")
            for doc in eligible:
                print(
                    f"  {doc.document_number} {doc.issued_on.isoformat()} "
                    f"{doc.total_payable}"
                )
            return 0

        if args.consolidate:
            tenant_id = _single_tenant(args)
            year, month = args.consolidate
            manual = scheduler.submit_manual_consolidation(
                tenant_id, year, month, args.documents,
            )
            print(
                f"Submitted {manual.document_number}: "
                f"{len(manual.source_numbers)} document(s), "
                f"state={manual.validation_state}"
            )
            for number in manual.skipped_numbers:
                print(f"  skipped (not eligible): {number}")
            return 0

        if args.history is not None:
            tenant_id = _single_tenant(args)
            entries = scheduler.consolidation_history(tenant_id, args.history or None)
            for entry in entries:
                print(
                    f"{entry.document_number} {entry.issued_on.isoformat()} "
                    f"{entry.validation_state} {entry.totals.total_payable} "
                    f"({len(entry.consolidated_documents)} document(s))"
                )
            return 0

        if args.refresh:
            tenant_id = _single_tenant(args)
            service = ConsolidationStatusService(session_factory, client_factory)
            refreshed = service.refresh_consolidated_status(tenant_id, args.refresh)
            print(f"{refreshed.document_number}: {refreshed.validation_state}")
            return 0

        created = scheduler.schedule_next_month()
        print(f"Scheduled {len(created)} task(s)")
        if args.schedule_only:
            return 0

        summary = scheduler.run_due_consolidations(tenant_ids=args.tenant)
        print(f"Run {summary.run_date.isoformat()}: {summary.selected} task(s) selected")
        for outcome in summary.outcomes:
            line = (
                f"  {outcome.tenant_id} {outcome.year}-{outcome.month:02d} "
                f"{outcome.outcome.value}"
            )
            if outcome.consolidated_document_id:
                line += f" {outcome.consolidated_document_id}"
            if outcome.error:
                line += f" ({outcome.error})"
            print(line)
        return 0
    except EInvoiceError as exc:
        print(f"{exc.code}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
