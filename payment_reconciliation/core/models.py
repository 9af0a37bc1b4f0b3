"""
Data models for reconciliation matching.

Records coming from the extraction/import side are coerced through the
`from_dict` constructors, which reject anything that does not have the
normalized shape the scorer relies on.
"""

import datetime as dt
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidScopeError, ValidationError
from .utils import parse_date, parse_datetime, round_money, counterparty_key, MONEY_TOLERANCE


class Direction(str, Enum):
    """Money flow of a bank transaction."""
    CREDIT = "credit"
    DEBIT = "debit"


class DocumentType(str, Enum):
    """Receivable (invoice) or payable (bill)."""
    INVOICE = "invoice"
    BILL = "bill"

    @property
    def expected_direction(self) -> Direction:
        return Direction.CREDIT if self is DocumentType.INVOICE else Direction.DEBIT


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"

    @classmethod
    def for_balance(cls, total: float, amount_paid: float) -> "PaymentStatus":
        remaining = round_money(total - amount_paid)
        if remaining < -MONEY_TOLERANCE:
            return cls.OVERPAID
        if remaining <= MONEY_TOLERANCE:
            return cls.PAID
        if amount_paid > 0:
            return cls.PARTIAL
        return cls.UNPAID


class ReconciliationStatus(str, Enum):
    UNMATCHED = "unmatched"
    PARTIAL = "partial"
    MATCHED = "matched"
    CATEGORIZED = "categorized"


class AllocationMethod(str, Enum):
    AUTO = "auto"
    AI_SUGGESTED = "ai_suggested"
    MANUAL = "manual"


class AmountMatchType(str, Enum):
    EXACT = "exact"
    FEE_ADJUSTED = "fee_adjusted"
    PARTIAL = "partial"
    SUM = "sum"
    APPROXIMATE = "approximate"
    FX_CONVERTED = "fx_converted"
    NONE = "none"


class CandidateKind(str, Enum):
    SINGLE = "single"
    DOCUMENT_COMBINATION = "document_combination"   # one payment, several documents
    PAYMENT_COMBINATION = "payment_combination"     # one document, several payments


class DecisionAction(str, Enum):
    AUTO_MATCH = "auto_match"
    SUGGEST = "suggest"
    PRESENT_OPTIONS = "present_options"
    SUGGEST_WITH_WARNING = "suggest_with_warning"
    NO_MATCH = "no_match"


# ============================================
# Coercion helpers
# ============================================

def _serialize(value: Any) -> Any:
    """Convert enums and dates to JSON-friendly values, recursively."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


def _require(data: Dict, key: str, record: str) -> Any:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{record} is missing required field '{key}'",
                              details={"record": record, "field": key})
    return value


def _amount(value: Any, key: str, record: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{record}.{key} must be a number", details={"field": key})
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{record}.{key} must be a number, got {value!r}",
                              details={"record": record, "field": key})


def _optional_amount(value: Any, key: str, record: str) -> Optional[float]:
    if value is None or value == "":
        return None
    return _amount(value, key, record)


def _date(value: Any, key: str, record: str) -> dt.date:
    try:
        return parse_date(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{record}.{key} must be a date, got {value!r}",
                              details={"record": record, "field": key})


def _optional_date(value: Any, key: str, record: str) -> Optional[dt.date]:
    if value is None or value == "":
        return None
    return _date(value, key, record)


def _optional_datetime(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    return parse_datetime(value)


def _enum(enum_cls, value: Any, key: str, record: str):
    try:
        return enum_cls(value.value if isinstance(value, Enum) else str(value).lower())
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"{record}.{key} must be one of: {allowed}",
                              details={"record": record, "field": key, "value": value})


# ============================================
# Ledger records
# ============================================

@dataclass
class PaymentAllocation:
    """A recorded amount linking one transaction to one document."""
    transaction_id: str
    document_id: str
    amount: float                                # document currency
    method: AllocationMethod = AllocationMethod.MANUAL
    confidence: int = 100
    allocated_at: Optional[dt.datetime] = None
    transaction_amount: Optional[float] = None   # transaction currency, when an FX rate applies
    fx_rate: float = 1.0

    @property
    def transaction_side_amount(self) -> float:
        return self.transaction_amount if self.transaction_amount is not None else self.amount

    def key(self) -> Tuple[str, str, float]:
        return (self.transaction_id, self.document_id, round_money(self.amount))

    def to_dict(self) -> Dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "PaymentAllocation":
        record = "PaymentAllocation"
        return cls(
            transaction_id=str(_require(data, "transaction_id", record)),
            document_id=str(_require(data, "document_id", record)),
            amount=_amount(_require(data, "amount", record), "amount", record),
            method=_enum(AllocationMethod, data.get("method", "manual"), "method", record),
            confidence=int(data.get("confidence", 100)),
            allocated_at=_optional_datetime(data.get("allocated_at")),
            transaction_amount=_optional_amount(data.get("transaction_amount"), "transaction_amount", record),
            fx_rate=float(data.get("fx_rate", 1.0)),
        )


@dataclass
class Transaction:
    """A normalized bank transaction."""
    id: str
    user_id: str
    date: dt.date
    amount: float
    description: str = ""
    direction: Optional[Direction] = None
    currency: str = "USD"
    reference: Optional[str] = None
    account_id: Optional[str] = None
    status: ReconciliationStatus = ReconciliationStatus.UNMATCHED
    category: Optional[str] = None
    allocations: List[PaymentAllocation] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        if self.direction is None:
            self.direction = Direction.CREDIT if self.amount >= 0 else Direction.DEBIT
        self.currency = (self.currency or "USD").upper()

    @property
    def absolute_amount(self) -> float:
        return round_money(abs(self.amount))

    @property
    def allocated_amount(self) -> float:
        return round_money(sum(a.transaction_side_amount for a in self.allocations))

    @property
    def unallocated_amount(self) -> float:
        return round_money(self.absolute_amount - self.allocated_amount)

    @property
    def is_fully_allocated(self) -> bool:
        return self.unallocated_amount <= MONEY_TOLERANCE

    def to_dict(self) -> Dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "Transaction":
        record = "Transaction"
        direction = data.get("direction") or data.get("type")
        return cls(
            id=str(_require(data, "id", record)),
            user_id=str(_require(data, "user_id", record)),
            date=_date(_require(data, "date", record), "date", record),
            amount=_amount(_require(data, "amount", record), "amount", record),
            description=str(data.get("description") or ""),
            direction=_enum(Direction, direction, "direction", record) if direction else None,
            currency=str(data.get("currency") or "USD"),
            reference=data.get("reference") or None,
            account_id=data.get("account_id") or None,
            status=_enum(ReconciliationStatus, data.get("status") or "unmatched", "status", record),
            category=data.get("category") or None,
            allocations=[PaymentAllocation.from_dict(a) for a in data.get("allocations") or []],
            version=int(data.get("version") or 0),
        )


def _check_balances(data: Dict, total: float, amount_paid: float, allocations: List[PaymentAllocation]):
    """Reject imported balances that contradict each other or the allocations."""
    details = {"record": "Document", "id": data.get("id")}
    allocated = round_money(sum(a.amount for a in allocations))
    if abs(allocated - amount_paid) > MONEY_TOLERANCE:
        raise ValidationError(f"Document.amount_paid of {amount_paid:.2f} does not match its allocations "
                              f"totalling {allocated:.2f}", details=details)
    remaining = _optional_amount(data.get("amount_remaining"), "amount_remaining", "Document")
    if remaining is not None and abs(remaining - (total - amount_paid)) > MONEY_TOLERANCE:
        raise ValidationError(f"Document.amount_remaining of {remaining:.2f} should be total minus amount_paid "
                              f"({total - amount_paid:.2f})", details=details)
    status = data.get("payment_status")
    if status:
        expected = PaymentStatus.for_balance(total, amount_paid)
        if _enum(PaymentStatus, status, "payment_status", "Document") != expected:
            raise ValidationError(f"Document.payment_status '{status}' contradicts its balance; "
                                  f"expected '{expected.value}'", details=details)


@dataclass
class Document:
    """An invoice (receivable) or bill (payable)."""
    id: str
    user_id: str
    document_type: DocumentType
    document_number: str
    counterparty_name: str
    total: float
    issue_date: dt.date
    currency: str = "USD"
    due_date: Optional[dt.date] = None
    amount_paid: float = 0.0
    amount_remaining: Optional[float] = None
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.UNMATCHED
    allocations: List[PaymentAllocation] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        if self.amount_remaining is None:
            self.amount_remaining = round_money(self.total - self.amount_paid)
        self.currency = (self.currency or "USD").upper()

    @property
    def expected_direction(self) -> Direction:
        return self.document_type.expected_direction

    @property
    def counterparty_key(self) -> str:
        return counterparty_key(self.counterparty_name)

    @property
    def is_open(self) -> bool:
        return self.amount_remaining > MONEY_TOLERANCE

    def to_dict(self) -> Dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "Document":
        record = "Document"
        total = _amount(_require(data, "total", record), "total", record)
        if total < 0:
            raise ValidationError("Document.total must not be negative", details={"field": "total"})
        amount_paid = _optional_amount(data.get("amount_paid"), "amount_paid", record) or 0.0
        allocations = [PaymentAllocation.from_dict(a) for a in data.get("allocations") or []]
        _check_balances(data, total, amount_paid, allocations)
        return cls(
            id=str(_require(data, "id", record)),
            user_id=str(_require(data, "user_id", record)),
            document_type=_enum(DocumentType, _require(data, "document_type", record),
                                "document_type", record),
            document_number=str(data.get("document_number") or ""),
            counterparty_name=str(data.get("counterparty_name") or ""),
            total=total,
            issue_date=_date(_require(data, "issue_date", record), "issue_date", record),
            currency=str(data.get("currency") or "USD"),
            due_date=_optional_date(data.get("due_date"), "due_date", record),
            amount_paid=amount_paid,
            amount_remaining=round_money(total - amount_paid),
            payment_status=PaymentStatus.for_balance(total, amount_paid),
            reconciliation_status=_enum(ReconciliationStatus,
                                        data.get("reconciliation_status") or "unmatched",
                                        "reconciliation_status", record),
            allocations=allocations,
            version=int(data.get("version") or 0),
        )


# ============================================
# Matching results
# ============================================

@dataclass
class MatchSignals:
    """Per-candidate sub-scores and the audit details behind them."""
    reference_score: int = 0
    amount_score: int = 0
    identity_score: int = 0
    time_score: int = 0
    context_score: int = 0
    amount_match_type: AmountMatchType = AmountMatchType.NONE
    confidence: int = 0

    reference_found: Optional[str] = None
    amount_difference: float = 0.0
    amount_difference_percent: float = 0.0
    fee_processor: Optional[str] = None
    name_similarity: float = 0.0
    days_from_issue: Optional[int] = None
    days_from_due: Optional[int] = None
    advance_payment: bool = False
    cross_currency: bool = False
    fx_rate: Optional[float] = None
    converted_amount: Optional[float] = None

    @property
    def total_score(self) -> int:
        return (self.reference_score + self.amount_score + self.identity_score
                + self.time_score + self.context_score)

    def to_dict(self) -> Dict:
        data = _serialize(asdict(self))
        data["total_score"] = self.total_score
        return data


@dataclass
class ProposedAllocation:
    """An allocation a candidate would create if confirmed."""
    transaction_id: str
    document_id: str
    amount: float
    transaction_amount: Optional[float] = None
    fx_rate: Optional[float] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class MatchCandidate:
    """A scored pairing of transaction(s) and document(s)."""
    kind: CandidateKind
    transactions: List[Transaction]
    documents: List[Document]
    signals: MatchSignals
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    allocations: List[ProposedAllocation] = field(default_factory=list)

    @property
    def confidence(self) -> int:
        return self.signals.confidence

    @property
    def transaction_ids(self) -> List[str]:
        return [t.id for t in self.transactions]

    @property
    def document_ids(self) -> List[str]:
        return [d.id for d in self.documents]

    @property
    def item_count(self) -> int:
        return len(self.transactions) + len(self.documents)

    def sort_key(self):
        return (-self.confidence, self.item_count, self.transaction_ids, self.document_ids)

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind.value,
            "transaction_ids": self.transaction_ids,
            "document_ids": self.document_ids,
            "document_numbers": [d.document_number for d in self.documents],
            "counterparties": sorted({d.counterparty_name for d in self.documents}),
            "confidence": self.confidence,
            "signals": self.signals.to_dict(),
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "allocations": [a.to_dict() for a in self.allocations],
        }


@dataclass
class Combination:
    """A subset of documents or transactions whose amounts add up to a target."""
    items: List[Any]
    total: float
    difference: float

    @property
    def item_ids(self) -> List[str]:
        return [i.id for i in self.items]

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class EscalationVerdict:
    """Structured answer returned by the investigation service."""
    status: str
    confidence: int
    explanation: str
    suggested_action: str
    matched_transaction_ids: List[str] = field(default_factory=list)
    matched_document_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class MatchDecision:
    """Action chosen for one anchor item plus what to show the user."""
    action: DecisionAction
    anchor_type: str
    anchor_id: str
    primary: Optional[MatchCandidate] = None
    alternatives: List[MatchCandidate] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    escalation: Optional[EscalationVerdict] = None
    escalation_error: Optional[str] = None

    @property
    def confidence(self) -> int:
        return self.primary.confidence if self.primary else 0

    @property
    def candidates(self) -> List[MatchCandidate]:
        return ([self.primary] if self.primary else []) + list(self.alternatives)

    def to_dict(self) -> Dict:
        return {
            "action": self.action.value,
            "anchor_type": self.anchor_type,
            "anchor_id": self.anchor_id,
            "confidence": self.confidence,
            "primary": self.primary.to_dict() if self.primary else None,
            "alternatives": [c.to_dict() for c in self.alternatives],
            "reasons": list(self.reasons),
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "escalation_error": self.escalation_error,
        }


# ============================================
# Learned counterparty behaviour
# ============================================

@dataclass
class VendorPattern:
    """Learned behavioural profile of one counterparty for one user."""
    user_id: str
    counterparty_key: str
    counterparty_name: str
    transaction_keywords: List[str] = field(default_factory=list)
    keyword_counts: Dict[str, int] = field(default_factory=dict)
    known_aliases: List[str] = field(default_factory=list)
    payment_processors: List[str] = field(default_factory=list)
    payment_processor: Optional[str] = None
    typical_payment_delay_days: Optional[float] = None
    payment_delay_variance: float = 0.0
    payment_delay_range: Optional[Tuple[int, int]] = None
    delay_observations: int = 0
    typical_fee_percentage: Optional[float] = None
    fee_observations: int = 0
    typical_amounts: List[float] = field(default_factory=list)
    uses_installments: bool = False
    installment_pattern: Optional[str] = None
    invoice_currency: Optional[str] = None
    payment_currency: Optional[str] = None
    match_count: int = 0
    manual_match_count: int = 0
    learning_confidence: float = 0.0
    rejected_keywords: List[str] = field(default_factory=list)
    rejected_aliases: List[str] = field(default_factory=list)
    rejected_matches: List[Tuple[str, str]] = field(default_factory=list)
    rejection_count: int = 0
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None
    last_matched_at: Optional[dt.datetime] = None
    version: int = 0

    @property
    def active_keywords(self) -> List[str]:
        return [k for k in self.transaction_keywords if k not in self.rejected_keywords]

    @property
    def active_aliases(self) -> List[str]:
        return [a for a in self.known_aliases if a not in self.rejected_aliases]

    def is_rejected(self, transaction_id: str, document_id: str) -> bool:
        return (transaction_id, document_id) in {tuple(p) for p in self.rejected_matches}

    def to_dict(self) -> Dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "VendorPattern":
        record = "VendorPattern"
        delay_range = data.get("payment_delay_range")
        return cls(
            user_id=str(_require(data, "user_id", record)),
            counterparty_key=str(data.get("counterparty_key")
                                 or counterparty_key(_require(data, "counterparty_name", record))),
            counterparty_name=str(_require(data, "counterparty_name", record)),
            transaction_keywords=list(data.get("transaction_keywords") or []),
            keyword_counts=dict(data.get("keyword_counts") or {}),
            known_aliases=list(data.get("known_aliases") or []),
            payment_processors=list(data.get("payment_processors") or []),
            payment_processor=data.get("payment_processor"),
            typical_payment_delay_days=data.get("typical_payment_delay_days"),
            payment_delay_variance=float(data.get("payment_delay_variance") or 0.0),
            payment_delay_range=tuple(delay_range) if delay_range else None,
            delay_observations=int(data.get("delay_observations") or 0),
            typical_fee_percentage=data.get("typical_fee_percentage"),
            fee_observations=int(data.get("fee_observations") or 0),
            typical_amounts=[float(a) for a in data.get("typical_amounts") or []],
            uses_installments=bool(data.get("uses_installments")),
            installment_pattern=data.get("installment_pattern"),
            invoice_currency=data.get("invoice_currency"),
            payment_currency=data.get("payment_currency"),
            match_count=int(data.get("match_count") or 0),
            manual_match_count=int(data.get("manual_match_count") or 0),
            learning_confidence=float(data.get("learning_confidence") or 0.0),
            rejected_keywords=list(data.get("rejected_keywords") or []),
            rejected_aliases=list(data.get("rejected_aliases") or []),
            rejected_matches=[tuple(p) for p in data.get("rejected_matches") or []],
            rejection_count=int(data.get("rejection_count") or 0),
            created_at=_optional_datetime(data.get("created_at")),
            updated_at=_optional_datetime(data.get("updated_at")),
            last_matched_at=_optional_datetime(data.get("last_matched_at")),
            version=int(data.get("version") or 0),
        )


@dataclass
class MatchHistoryEntry:
    """One confirmed allocation, kept for pattern context and audit."""
    user_id: str
    counterparty_key: str
    counterparty_name: str
    document_id: str
    document_number: str
    document_total: float
    document_currency: str
    issue_date: dt.date
    transaction_id: str
    transaction_amount: float
    transaction_currency: str
    transaction_date: dt.date
    transaction_description: str
    allocation_amount: float
    amount_match_type: str
    days_difference: int
    method: AllocationMethod
    confidence: int
    matched_at: dt.datetime

    def to_dict(self) -> Dict:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict) -> "MatchHistoryEntry":
        record = "MatchHistoryEntry"
        return cls(
            user_id=str(data["user_id"]),
            counterparty_key=str(data["counterparty_key"]),
            counterparty_name=str(data.get("counterparty_name") or ""),
            document_id=str(data["document_id"]),
            document_number=str(data.get("document_number") or ""),
            document_total=float(data.get("document_total") or 0.0),
            document_currency=str(data.get("document_currency") or "USD"),
            issue_date=_date(data["issue_date"], "issue_date", record),
            transaction_id=str(data["transaction_id"]),
            transaction_amount=float(data.get("transaction_amount") or 0.0),
            transaction_currency=str(data.get("transaction_currency") or "USD"),
            transaction_date=_date(data["transaction_date"], "transaction_date", record),
            transaction_description=str(data.get("transaction_description") or ""),
            allocation_amount=float(data.get("allocation_amount") or 0.0),
            amount_match_type=str(data.get("amount_match_type") or "none"),
            days_difference=int(data.get("days_difference") or 0),
            method=_enum(AllocationMethod, data.get("method", "manual"), "method", record),
            confidence=int(data.get("confidence") or 0),
            matched_at=parse_datetime(data["matched_at"]),
        )


@dataclass(frozen=True)
class Scope:
    """User (and optionally account) that every read and write is confined to."""
    user_id: str
    account_id: Optional[str] = None

    def includes_account(self, account_id: Optional[str]) -> bool:
        return self.account_id is None or account_id == self.account_id


def require_scope(scope: Optional[Scope]) -> Scope:
    """Reject calls made without a user scope."""
    if scope is None or not isinstance(scope, Scope) or not (scope.user_id or "").strip():
        raise InvalidScopeError(details={"scope": repr(scope)})
    return scope
