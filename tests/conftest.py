import datetime as dt

import pytest

from payment_reconciliation.core.config import MatchingConfig
from payment_reconciliation.core.engine import ReconciliationEngine
from payment_reconciliation.core.models import Document, DocumentType, Scope, Transaction
from payment_reconciliation.core.store import MemoryStore, SQLiteStore

FIXED_NOW = dt.datetime(2024, 3, 1, 12, 0, tzinfo=dt.timezone.utc)
USER = "user-1"


def make_tx(id, amount, date="2024-01-14", description="", user_id=USER, **kwargs):
    return Transaction(id=id, user_id=user_id, date=dt.date.fromisoformat(date), amount=amount,
                       description=description, **kwargs)


def make_doc(id, total, number=None, counterparty="Acme Corp", issue="2024-01-01", due="2024-01-15",
             document_type=DocumentType.INVOICE, user_id=USER, **kwargs):
    return Document(id=id, user_id=user_id, document_type=document_type, document_number=number or id,
                    counterparty_name=counterparty, total=total, issue_date=dt.date.fromisoformat(issue),
                    due_date=dt.date.fromisoformat(due) if due else None, **kwargs)


@pytest.fixture
def scope():
    return Scope(user_id=USER)


@pytest.fixture
def config():
    return MatchingConfig()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteStore(tmp_path / "recon.sqlite")


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SQLiteStore(tmp_path / "recon.sqlite")


@pytest.fixture
def engine(store, config):
    return ReconciliationEngine(store, config, now=lambda: FIXED_NOW)
