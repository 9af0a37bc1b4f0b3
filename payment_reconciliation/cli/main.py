#!/usr/bin/env python3
"""
Main CLI entrypoint for payment reconciliation.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from payment_reconciliation.core.config import load_config
from payment_reconciliation.core.engine import ReconciliationEngine
from payment_reconciliation.core.errors import ReconciliationError, ValidationError
from payment_reconciliation.core.escalation import EscalationAdapter
from payment_reconciliation.core.models import Document, Scope, Transaction
from payment_reconciliation.core.reporting import build_summary_pdf, write_allocations_csv, write_decisions_csv
from payment_reconciliation.core.store import MemoryStore, ReconciliationStore, SQLiteStore

PROVIDERS = ["openai", "anthropic", "azure-openai"]


def load_snapshot(path: Path, user_id: Optional[str] = None) -> Tuple[str, List[Transaction], List[Document]]:
    """
    Load transactions and documents from a JSON snapshot:

        {"user_id": "u1", "transactions": [...], "documents": [...]}

    Records without a user_id inherit the snapshot's (or the one given).
    """
    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Could not parse {path}: {e}")
    user_id = user_id or data.get("user_id")
    if not user_id:
        raise ValidationError("No user id: pass --user or set \"user_id\" in the snapshot")

    def with_user(record: Dict) -> Dict:
        return {"user_id": user_id, **record}

    transactions = [Transaction.from_dict(with_user(r)) for r in data.get("transactions", [])]
    documents = [Document.from_dict(with_user(r)) for r in data.get("documents", [])]
    return user_id, transactions, documents


def import_records(store: ReconciliationStore, scope: Scope, transactions: List[Transaction],
                   documents: List[Document]) -> Tuple[int, int]:
    """Add records the store does not have yet (re-runs against a database are safe)."""
    known_tx = {t.id for t in store.list_transactions(Scope(scope.user_id))}
    known_doc = {d.id for d in store.list_documents(scope)}
    new_tx = [t for t in transactions if t.id not in known_tx]
    new_doc = [d for d in documents if d.id not in known_doc]
    if new_tx:
        store.add_transactions(scope, new_tx)
    if new_doc:
        store.add_documents(scope, new_doc)
    return len(new_tx), len(new_doc)


def main(argv=None):
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Match bank transactions to invoices and bills, and report the results",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Match a snapshot with default rules, reports in ./output
  recon-match --input snapshot.json

  # Keep state (allocations, learned vendor patterns) between runs
  recon-match --input snapshot.json --db reconciliation.sqlite

  # Only suggest, and ask the LLM investigator about unresolved items
  recon-match --input snapshot.json --no-auto-confirm --escalate --llm-provider anthropic
        """
    )
    parser.add_argument("--input", required=True,
                        help="JSON snapshot with 'transactions' and 'documents'")
    parser.add_argument("--user",
                        help="User id (default: 'user_id' from the snapshot)")
    parser.add_argument("--account",
                        help="Only reconcile transactions of this bank account")
    parser.add_argument("--rules", default="./matching_rules.json",
                        help="matching_rules.json with thresholds and fee models (default: ./matching_rules.json)")
    parser.add_argument("--db",
                        help="SQLite database for persistent state (default: in-memory)")
    parser.add_argument("--output", default="./output",
                        help="Folder for reports (default: ./output)")
    parser.add_argument("--no-auto-confirm", action="store_true",
                        help="Do not apply auto_match decisions, only report them")
    parser.add_argument("--no-pdf", action="store_true",
                        help="Skip the summary PDF")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Show debug logging")

    # LLM configuration
    parser.add_argument("--escalate", action="store_true",
                        help="Ask the LLM investigator about no_match and tied low-confidence items")
    parser.add_argument("--llm-provider", choices=PROVIDERS,
                        help="LLM provider to use (default: openai, or LLM_PROVIDER env var)")
    parser.add_argument("--llm-model",
                        help="LLM model to use (uses provider default if not specified, or LLM_MODEL env var)")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        config = load_config(Path(args.rules))
    except ReconciliationError as e:
        print(f"[ERROR] {e.message}")
        return 1

    llm_provider = args.llm_provider or os.getenv("LLM_PROVIDER", config.escalation.provider)
    if llm_provider not in PROVIDERS:
        print(f"[ERROR] Invalid LLM provider: {llm_provider}")
        print(f"[ERROR] Must be one of: {', '.join(PROVIDERS)}")
        return 1
    config.escalation.provider = llm_provider
    config.escalation.model = args.llm_model or config.escalation.model

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"[ERROR] Input not found: {input_path}")
        return 1

    try:
        user_id, transactions, documents = load_snapshot(input_path, args.user)
        scope = Scope(user_id=user_id, account_id=args.account)

        store = SQLiteStore(Path(args.db)) if args.db else MemoryStore()
        added_tx, added_doc = import_records(store, scope, transactions, documents)
        print(f"[INFO] Loaded {added_tx} new transaction(s) and {added_doc} new document(s) for {user_id}")

        adapter = None
        if args.escalate:
            adapter = EscalationAdapter.from_config(config.escalation)
            print(f"[INFO] LLM: {adapter.provider.value} ({adapter.model})")

        engine = ReconciliationEngine(store, config, adapter)
        summary = engine.reconcile(scope, auto_confirm=not args.no_auto_confirm, escalate=args.escalate)
    except ReconciliationError as e:
        print(f"[ERROR] {e.message}")
        return 1

    for err in summary.errors:
        print(f"[WARN] {err['transaction_id']}: {err['message']}")
    for d in summary.decisions:
        if d.escalation_error:
            print(f"[WARN] Escalation for {d.anchor_id} failed: {d.escalation_error}")

    out_dir = Path(args.output)
    out_dir.mkdir(parents=True, exist_ok=True)
    final_documents = store.list_documents(scope)

    decisions_csv = out_dir / "decisions.csv"
    write_decisions_csv(summary.decisions, decisions_csv)
    allocations_csv = out_dir / "allocations.csv"
    write_allocations_csv(final_documents, allocations_csv)
    print(f"[OK] Wrote {decisions_csv} and {allocations_csv}")

    if not args.no_pdf:
        summary_pdf = out_dir / "summary.pdf"
        build_summary_pdf(summary, final_documents, summary_pdf)
        print(f"[OK] Wrote {summary_pdf}")

    counts = ", ".join(f"{k}={v}" for k, v in summary.counts.items() if v)
    print(f"[OK] {summary.total_transactions} transaction(s): {summary.auto_confirmed} auto-confirmed "
          f"({summary.match_rate:.1f}%){'; ' + counts if counts else ''}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
