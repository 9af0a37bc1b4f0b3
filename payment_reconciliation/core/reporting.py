"""
CSV and PDF reporting of match decisions and allocations.
"""

import csv
import datetime as dt
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .models import Document, MatchDecision
from .utils import money_fmt

DECISION_FIELDS = [
    "anchor_type", "anchor_id", "action", "confidence", "kind", "transaction_ids", "document_ids",
    "document_numbers", "amount_type", "fee_processor", "reasons", "warnings", "alternatives",
    "escalation_status", "escalation_action", "escalation_error",
]

ALLOCATION_FIELDS = [
    "allocated_at", "transaction_id", "document_id", "document_number", "counterparty", "amount",
    "currency", "transaction_amount", "fx_rate", "method", "confidence", "payment_status",
]


def decision_rows(decisions: Sequence[MatchDecision]) -> List[Dict]:
    """Flatten decisions into one row per anchor."""
    rows = []
    for d in decisions:
        p = d.primary
        rows.append({
            "anchor_type": d.anchor_type,
            "anchor_id": d.anchor_id,
            "action": d.action.value,
            "confidence": d.confidence,
            "kind": p.kind.value if p else "",
            "transaction_ids": " ".join(p.transaction_ids) if p else "",
            "document_ids": " ".join(p.document_ids) if p else "",
            "document_numbers": " ".join(x.document_number for x in p.documents) if p else "",
            "amount_type": p.signals.amount_match_type.value if p else "",
            "fee_processor": (p.signals.fee_processor or "") if p else "",
            "reasons": "; ".join((p.reasons if p else []) + d.reasons),
            "warnings": "; ".join(p.warnings) if p else "",
            "alternatives": " | ".join(
                f"{'+'.join(a.document_ids)}:{a.confidence}" for a in d.alternatives),
            "escalation_status": d.escalation.status if d.escalation else "",
            "escalation_action": d.escalation.suggested_action if d.escalation else "",
            "escalation_error": d.escalation_error or "",
        })
    return rows


def allocation_rows(documents: Sequence[Document]) -> List[Dict]:
    """One row per allocation, ordered by allocation time."""
    rows = []
    for doc in documents:
        for a in doc.allocations:
            rows.append({
                "allocated_at": a.allocated_at.isoformat(timespec="seconds") if a.allocated_at else "",
                "transaction_id": a.transaction_id,
                "document_id": doc.id,
                "document_number": doc.document_number,
                "counterparty": doc.counterparty_name,
                "amount": a.amount,
                "currency": doc.currency,
                "transaction_amount": a.transaction_side_amount,
                "fx_rate": a.fx_rate,
                "method": a.method.value,
                "confidence": a.confidence,
                "payment_status": doc.payment_status.value,
            })
    return sorted(rows, key=lambda r: (r["allocated_at"], r["document_id"], r["transaction_id"]))


def write_decisions_csv(decisions: Sequence[MatchDecision], out_csv: Path):
    """Write match decisions to CSV file."""
    with out_csv.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=DECISION_FIELDS)
        w.writeheader()
        for r in decision_rows(decisions):
            w.writerow(r)


def write_allocations_csv(documents: Sequence[Document], out_csv: Path):
    """Write the allocation audit trail to CSV file."""
    with out_csv.open("w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=ALLOCATION_FIELDS)
        w.writeheader()
        for r in allocation_rows(documents):
            w.writerow(r)


def build_summary_pdf(summary, documents: Sequence[Document], out_pdf: Path,
                      title: str = "Reconciliation Summary",
                      generated_at: Optional[dt.datetime] = None) -> int:
    """
    Build summary PDF: run statistics, document status totals and decisions.

    Args:
        summary: ReconcileSummary from ReconciliationEngine.reconcile
        documents: Documents after the run
        out_pdf: Output PDF path
        title: Report title
        generated_at: Timestamp printed in the header (defaults to now)

    Returns:
        Number of pages written
    """
    from reportlab.lib.pagesizes import letter
    from reportlab.pdfgen import canvas
    from reportlab.lib.units import inch

    status_counts = defaultdict(int)
    status_outstanding = defaultdict(float)
    for d in documents:
        status_counts[d.payment_status.value] += 1
        status_outstanding[d.payment_status.value] += max(d.amount_remaining, 0.0)

    c = canvas.Canvas(out_pdf.as_posix(), pagesize=letter)
    width, height = letter
    pages = 1

    def new_page(heading: Optional[str] = None):
        nonlocal pages
        c.showPage()
        pages += 1
        y_top = height - 1 * inch
        if heading:
            c.setFont("Helvetica-Bold", 12)
            c.drawString(1 * inch, y_top, heading)
            y_top -= 0.3 * inch
        return y_top

    y = height - 1 * inch
    c.setFont("Helvetica-Bold", 16)
    c.drawString(1 * inch, y, title)
    y -= 0.3 * inch
    c.setFont("Helvetica", 10)
    timestamp = (generated_at or dt.datetime.now()).isoformat(timespec="seconds")
    c.drawString(1 * inch, y, f"Generated: {timestamp}")
    y -= 0.4 * inch

    c.setFont("Helvetica-Bold", 12)
    c.drawString(1 * inch, y, "Run")
    y -= 0.25 * inch
    c.setFont("Helvetica", 10)
    for label, value in (("Transactions scanned", summary.total_transactions),
                         ("Auto-confirmed", summary.auto_confirmed),
                         ("Match rate", f"{summary.match_rate:.1f}%")):
        c.drawString(1.1 * inch, y, f"{label}: {value}")
        y -= 0.2 * inch

    y -= 0.2 * inch
    c.setFont("Helvetica-Bold", 12)
    c.drawString(1 * inch, y, "Decisions")
    y -= 0.25 * inch
    c.setFont("Helvetica", 10)
    for action, count in summary.counts.items():
        c.drawString(1.1 * inch, y, f"{action}: {count}")
        y -= 0.2 * inch

    y -= 0.2 * inch
    c.setFont("Helvetica-Bold", 12)
    c.drawString(1 * inch, y, "Documents by Payment Status")
    y -= 0.25 * inch
    c.setFont("Helvetica", 10)
    for status in sorted(status_counts):
        c.drawString(1.1 * inch, y, f"{status}: {status_counts[status]} "
                                    f"(outstanding {money_fmt(status_outstanding[status])})")
        y -= 0.2 * inch
        if y < 1.2 * inch:
            y = new_page()

    if summary.decisions:
        y = new_page("Decision Details")
        c.setFont("Helvetica-Bold", 9)
        c.drawString(1.00 * inch, y, "Transaction")
        c.drawString(2.40 * inch, y, "Action")
        c.drawString(4.00 * inch, y, "Documents")
        c.drawRightString(7.50 * inch, y, "Confidence")
        y -= 0.15 * inch
        c.line(1.0 * inch, y, 7.6 * inch, y)
        y -= 0.15 * inch

        c.setFont("Helvetica", 9)
        for d in summary.decisions:
            docs = " + ".join(x.document_number or x.id for x in d.primary.documents) if d.primary else "-"
            c.drawString(1.00 * inch, y, d.anchor_id[:22])
            c.drawString(2.40 * inch, y, d.action.value)
            c.drawString(4.00 * inch, y, docs[:40])
            c.drawRightString(7.50 * inch, y, str(d.confidence))
            y -= 0.18 * inch
            if y < 0.8 * inch:
                y = new_page("Decision Details (cont.)")
                c.setFont("Helvetica", 9)

    c.showPage()
    c.save()
    return pages
