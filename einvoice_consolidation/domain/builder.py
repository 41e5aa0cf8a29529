"""
Consolidated document builder -- numbering, totals and default rendering.

ZERO I/O.

Contract:
    ``consolidated_number(year, month, existing)`` returns
    ``CON-{year}{month:02d}-AUTO`` when no number with that prefix exists
    for the tenant, otherwise ``CON-{year}{month:02d}-{n}`` with ``n`` one
    past the highest numeric suffix already used.
    ``build_draft`` sums the four monetary totals over the sources.
    ``render_json`` is the default renderer: a JSON summary wrapped in a
    ``SubmissionDocument``.  Production deployments inject a renderer
    that emits the service's XML schema.
"""

from __future__ import annotations

import json
import re
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Sequence

from einvoice_consolidation.domain.types import (
    ConsolidatedDraft,
    ConsolidatedTotals,
    SourceDocument,
)
from einvoice_submission.domain.types import SubmissionDocument

DocumentRenderer = Callable[[ConsolidatedDraft], SubmissionDocument]

CONSOLIDATED_PREFIX = "CON"
AUTO_SUFFIX = "AUTO"


def number_prefix(year: int, month: int) -> str:
    return f"{CONSOLIDATED_PREFIX}-{year}{month:02d}"


def consolidated_number(year: int, month: int, existing: Iterable[str]) -> str:
    base = number_prefix(year, month)
    taken = [n for n in existing if n.startswith(base)]
    if not taken:
        return f"{base}-{AUTO_SUFFIX}"

    pattern = re.compile(rf"^{re.escape(base)}-(\d+)$")
    highest = 0
    for number in taken:
        match = pattern.match(number)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{base}-{highest + 1}"


def sum_totals(sources: Iterable[SourceDocument]) -> ConsolidatedTotals:
    excl = tax = rounding = payable = Decimal("0")
    for src in sources:
        excl += src.total_excluding_tax or Decimal("0")
        tax += src.tax_amount or Decimal("0")
        rounding += src.rounding or Decimal("0")
        payable += src.total_payable or Decimal("0")
    return ConsolidatedTotals(
        total_excluding_tax=excl,
        tax_amount=tax,
        rounding=rounding,
        total_payable=payable,
    )


def build_draft(
    tenant_id: str,
    year: int,
    month: int,
    sources: Sequence[SourceDocument],
    existing_numbers: Iterable[str],
    issued_on: date,
) -> ConsolidatedDraft:
    if not sources:
        raise ValueError("A consolidated document needs at least one source")
    return ConsolidatedDraft(
        tenant_id=tenant_id,
        document_number=consolidated_number(year, month, existing_numbers),
        year=year,
        month=month,
        issued_on=issued_on,
        totals=sum_totals(sources),
        sources=tuple(sources),
    )


def render_json(draft: ConsolidatedDraft) -> SubmissionDocument:
    """Default renderer: a deterministic JSON summary of the draft."""
    body = {
        "id": draft.document_number,
        "issueDate": draft.issued_on.isoformat(),
        "period": f"{draft.year}-{draft.month:02d}",
        "consolidated": True,
        "legalMonetaryTotal": {
            "taxExclusiveAmount": str(draft.totals.total_excluding_tax),
            "taxAmount": str(draft.totals.tax_amount),
            "payableRoundingAmount": str(draft.totals.rounding),
            "payableAmount": str(draft.totals.total_payable),
        },
        "lines": [
            {
                "id": src.document_number,
                "issueDate": src.issued_on.isoformat(),
                "taxExclusiveAmount": str(src.total_excluding_tax),
                "taxAmount": str(src.tax_amount),
            }
            for src in draft.sources
        ],
    }
    return SubmissionDocument(
        code_number=draft.document_number,
        content=json.dumps(body, sort_keys=True),
        format="JSON",
    )
