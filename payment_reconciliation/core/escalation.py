"""
Escalation of unresolved matches to an LLM investigator (Anthropic, OpenAI, etc.).

The adapter is a single request/response call: it formats the case, calls
the provider with a deadline and bounded retries, parses the verdict and
rejects any verdict that names records outside the candidate set. It never
writes allocations.
"""

import concurrent.futures
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Union

from .config import EscalationConfig
from .errors import EscalationError, EscalationInvalidReferenceError, EscalationTimeoutError
from .models import Document, EscalationVerdict, MatchCandidate, MatchDecision, MatchHistoryEntry, Transaction
from .utils import money_fmt

logger = logging.getLogger(__name__)


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    AZURE_OPENAI = "azure-openai"


# Default models for each provider
DEFAULT_MODELS = {
    LLMProvider.ANTHROPIC: "claude-3-5-haiku-20241022",
    LLMProvider.OPENAI: "gpt-4o-mini",
    LLMProvider.AZURE_OPENAI: "gpt-4o-mini",
}

VERDICT_STATUSES = ["match_found", "explanation_found", "no_resolution", "needs_human"]
SUGGESTED_ACTIONS = ["confirm_match", "split_payment", "mark_partial", "investigate", "ignore"]

# Lazy import clients
_clients = {}


def _get_anthropic_client(timeout: float):
    """Get or create Anthropic client (lazy initialization)."""
    if "anthropic" not in _clients:
        import anthropic
        _clients["anthropic"] = anthropic.Anthropic(timeout=timeout, max_retries=0)  # Uses ANTHROPIC_API_KEY env var
    return _clients["anthropic"]


def _get_openai_client(timeout: float):
    """Get or create OpenAI client (lazy initialization)."""
    if "openai" not in _clients:
        import openai
        _clients["openai"] = openai.OpenAI(timeout=timeout, max_retries=0)  # Uses OPENAI_API_KEY env var
    return _clients["openai"]


def _get_azure_openai_client(timeout: float):
    """Get or create Azure OpenAI client (lazy initialization)."""
    if "azure" not in _clients:
        import openai
        _clients["azure"] = openai.AzureOpenAI(
            api_key=os.getenv("AZURE_OPENAI_API_KEY"),
            api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
            azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT"),
            timeout=timeout,
            max_retries=0,
        )
    return _clients["azure"]


def _call_anthropic(prompt: str, model: str, timeout: float) -> str:
    """Call Anthropic API."""
    import anthropic
    client = _get_anthropic_client(timeout)
    try:
        response = client.messages.create(
            model=model,
            max_tokens=600,
            temperature=0.0,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
        )
    except anthropic.APITimeoutError:
        raise EscalationTimeoutError(f"Anthropic did not answer within {timeout:.0f}s",
                                     details={"timeout": timeout})
    return response.content[0].text.strip()


def _call_openai(prompt: str, model: str, timeout: float) -> str:
    """Call OpenAI API."""
    import openai
    client = _get_openai_client(timeout)
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=600,
            temperature=0.0,
            response_format={"type": "json_object"},
            timeout=timeout,
        )
    except openai.APITimeoutError:
        raise EscalationTimeoutError(f"OpenAI did not answer within {timeout:.0f}s",
                                     details={"timeout": timeout})
    return response.choices[0].message.content.strip()


def _call_azure_openai(prompt: str, model: str, timeout: float) -> str:
    """Call Azure OpenAI API."""
    import openai
    client = _get_azure_openai_client(timeout)
    try:
        response = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=600,
            temperature=0.0,
            response_format={"type": "json_object"},
            timeout=timeout,
        )
    except openai.APITimeoutError:
        raise EscalationTimeoutError(f"Azure OpenAI did not answer within {timeout:.0f}s",
                                     details={"timeout": timeout})
    return response.choices[0].message.content.strip()


# ============================================
# Request
# ============================================

@dataclass
class EscalationRequest:
    """Everything the investigator is allowed to see about one case."""
    anchor_type: str
    anchor: Dict
    decision_action: str
    decision_reasons: List[str]
    candidates: List[Dict]
    pattern_context: str = ""
    history: List[Dict] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)
    document_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


def _describe_transaction(t: Transaction) -> Dict:
    return {"id": t.id, "date": t.date.isoformat(), "amount": t.amount, "currency": t.currency,
            "unallocated": t.unallocated_amount, "description": t.description, "reference": t.reference}


def _describe_document(d: Document) -> Dict:
    return {"id": d.id, "type": d.document_type.value, "number": d.document_number,
            "counterparty": d.counterparty_name, "total": d.total, "remaining": d.amount_remaining,
            "currency": d.currency, "issue_date": d.issue_date.isoformat(),
            "due_date": d.due_date.isoformat() if d.due_date else None}


def build_investigation_request(decision: MatchDecision, anchor: Union[Transaction, Document],
                                candidates: Sequence[MatchCandidate], pattern_context: str = "",
                                history: Sequence[MatchHistoryEntry] = ()) -> EscalationRequest:
    """Package an unresolved decision for the investigator."""
    is_tx = isinstance(anchor, Transaction)
    tx_ids, doc_ids = [], []
    (tx_ids if is_tx else doc_ids).append(anchor.id)
    described = []
    for c in candidates:
        for t in c.transactions:
            if t.id not in tx_ids:
                tx_ids.append(t.id)
        for d in c.documents:
            if d.id not in doc_ids:
                doc_ids.append(d.id)
        described.append({
            "kind": c.kind.value,
            "confidence": c.confidence,
            "transactions": [_describe_transaction(t) for t in c.transactions],
            "documents": [_describe_document(d) for d in c.documents],
            "scores": {
                "reference": c.signals.reference_score,
                "amount": c.signals.amount_score,
                "amount_type": c.signals.amount_match_type.value,
                "identity": c.signals.identity_score,
                "time": c.signals.time_score,
                "context": c.signals.context_score,
            },
            "reasons": list(c.reasons),
            "warnings": list(c.warnings),
        })
    return EscalationRequest(
        anchor_type="transaction" if is_tx else "document",
        anchor=_describe_transaction(anchor) if is_tx else _describe_document(anchor),
        decision_action=decision.action.value,
        decision_reasons=list(decision.reasons),
        candidates=described,
        pattern_context=pattern_context,
        history=[h.to_dict() for h in history],
        transaction_ids=tx_ids,
        document_ids=doc_ids,
    )


def build_prompt(request: EscalationRequest) -> str:
    anchor = request.anchor
    if request.anchor_type == "transaction":
        headline = (f"Bank transaction {anchor['id']} on {anchor['date']}: "
                    f"{money_fmt(anchor['amount'], anchor['currency'])} \"{anchor['description']}\"")
    else:
        headline = (f"{anchor['type'].title()} {anchor['number']} from {anchor['counterparty']}: "
                    f"{money_fmt(anchor['remaining'], anchor['currency'])} remaining, issued {anchor['issue_date']}")

    history_lines = "\n".join(
        f"- {h['transaction_date']} {h['document_number']} {h['counterparty_name']}: "
        f"{h['allocation_amount']} {h['document_currency']} ({h['amount_match_type']})"
        for h in request.history) or "- none"

    return f"""You are investigating an unresolved payment reconciliation case.

Item to resolve:
{headline}

Automatic matching result: {request.decision_action}
{chr(10).join('- ' + r for r in request.decision_reasons)}

Scored candidates (JSON):
{json.dumps(request.candidates, indent=2)}

Counterparty knowledge:
{request.pattern_context or 'None'}

Recent confirmed matches:
{history_lines}

Consider fees deducted by payment processors, currency conversion, partial payments,
several invoices paid together, and installments. Only refer to these identifiers:
transactions {', '.join(request.transaction_ids) or 'none'};
documents {', '.join(request.document_ids) or 'none'}.

Return ONLY a JSON object (no markdown, no explanation):
{{
  "status": "one of {' | '.join(VERDICT_STATUSES)}",
  "confidence": 0-100,
  "explanation": "Brief explanation of what happened",
  "suggested_action": "one of {' | '.join(SUGGESTED_ACTIONS)}",
  "matched_transaction_ids": [],
  "matched_document_ids": []
}}"""


# ============================================
# Verdict
# ============================================

def _strip_code_fence(text: str) -> str:
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    json_lines = []
    in_code = False
    for line in lines:
        if line.startswith("```"):
            in_code = not in_code
            continue
        if in_code:
            json_lines.append(line)
    return "\n".join(json_lines)


def _parse_labelled(text: str) -> Dict:
    """Fallback for STATUS: / CONFIDENCE: style answers."""
    def grab(label):
        m = re.search(rf"^{label}:\s*(.+)$", text, flags=re.IGNORECASE | re.MULTILINE)
        return m.group(1).strip() if m else None

    def ids(value):
        if not value or value.lower() in ("none", "n/a", "-"):
            return []
        return [v.strip() for v in value.split(",") if v.strip()]

    status = grab("STATUS")
    if status is None:
        raise EscalationError("Investigator response could not be parsed", details={"response": text[:500]})
    return {
        "status": status,
        "confidence": grab("CONFIDENCE") or 0,
        "explanation": grab("EXPLANATION") or "",
        "suggested_action": grab("ACTION") or "investigate",
        "matched_transaction_ids": ids(grab("MATCHED_TRANSACTIONS")),
        "matched_document_ids": ids(grab("MATCHED_DOCUMENTS")),
    }


def parse_verdict(response_text: str) -> EscalationVerdict:
    """Parse the investigator's answer into a verdict."""
    text = _strip_code_fence((response_text or "").strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = _parse_labelled(text)
    if not isinstance(data, dict):
        raise EscalationError("Investigator response is not an object")

    status = str(data.get("status", "")).strip().lower()
    if status not in VERDICT_STATUSES:
        raise EscalationError(f"Unknown verdict status '{status}'", details={"status": status})
    action = str(data.get("suggested_action") or data.get("action") or "investigate").strip().lower()
    if action not in SUGGESTED_ACTIONS:
        action = "investigate"
    try:
        confidence = float(str(data.get("confidence", 0)).rstrip("%"))
    except ValueError:
        confidence = 0.0
    if 0 < confidence <= 1:
        confidence *= 100

    return EscalationVerdict(
        status=status,
        confidence=max(0, min(100, int(round(confidence)))),
        explanation=str(data.get("explanation") or ""),
        suggested_action=action,
        matched_transaction_ids=[str(i) for i in data.get("matched_transaction_ids") or []],
        matched_document_ids=[str(i) for i in data.get("matched_document_ids") or []],
    )


def validate_verdict(verdict: EscalationVerdict, request: EscalationRequest) -> EscalationVerdict:
    """Reject verdicts that name records the investigator was never shown."""
    unknown_tx = [i for i in verdict.matched_transaction_ids if i not in request.transaction_ids]
    unknown_doc = [i for i in verdict.matched_document_ids if i not in request.document_ids]
    if unknown_tx or unknown_doc:
        raise EscalationInvalidReferenceError(
            details={"unknown_transaction_ids": unknown_tx, "unknown_document_ids": unknown_doc})
    return verdict


# ============================================
# Adapter
# ============================================

class EscalationAdapter:
    """
    Synchronous investigator call with a hard deadline and bounded retries.

    `transport` replaces the provider call (prompt in, response text out);
    when omitted the configured LLM provider is used.
    """

    def __init__(self, provider: str = "openai", model: Optional[str] = None, timeout: float = 30.0,
                 max_attempts: int = 3, backoff: float = 1.0, backoff_multiplier: float = 2.0,
                 transport: Optional[Callable[[str], str]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        try:
            self.provider = LLMProvider(provider)
        except ValueError:
            raise EscalationError(f"Unsupported LLM provider: {provider}")
        self.model = model or DEFAULT_MODELS[self.provider]
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self.backoff_multiplier = backoff_multiplier
        self.transport = transport
        self.sleep = sleep
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, config: EscalationConfig, transport: Optional[Callable[[str], str]] = None,
                    sleep: Callable[[float], None] = time.sleep) -> "EscalationAdapter":
        return cls(provider=config.provider, model=config.model, timeout=config.timeout_seconds,
                   max_attempts=config.max_attempts, backoff=config.backoff_seconds,
                   backoff_multiplier=config.backoff_multiplier, transport=transport, sleep=sleep)

    def _call_provider(self, prompt: str, seconds: float) -> str:
        # The SDK request timeout is the deadline; no extra thread is needed
        if self.provider == LLMProvider.ANTHROPIC:
            return _call_anthropic(prompt, self.model, seconds)
        elif self.provider == LLMProvider.OPENAI:
            return _call_openai(prompt, self.model, seconds)
        return _call_azure_openai(prompt, self.model, seconds)

    def _call_transport(self, prompt: str, seconds: float) -> str:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="investigator")
        future = self._executor.submit(self.transport, prompt)
        try:
            return future.result(timeout=seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise EscalationTimeoutError(f"Investigator did not answer within {self.timeout:.0f}s",
                                         details={"timeout": self.timeout})

    def _call_with_deadline(self, prompt: str, seconds: float) -> str:
        if self.transport is None:
            return self._call_provider(prompt, seconds)
        return self._call_transport(prompt, seconds)

    def close(self):
        """Release the worker thread used for injected transports."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def investigate(self, request: EscalationRequest) -> EscalationVerdict:
        """
        Run one investigation.

        Raises:
            EscalationTimeoutError: deadline exceeded (covers all attempts)
            EscalationInvalidReferenceError: verdict named unknown records
            EscalationError: provider kept failing or answered nonsense
        """
        prompt = build_prompt(request)
        deadline = time.monotonic() + self.timeout
        delay = self.backoff
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise EscalationTimeoutError(details={"timeout": self.timeout, "attempts": attempt - 1})
            try:
                text = self._call_with_deadline(prompt, remaining)
                verdict = validate_verdict(parse_verdict(text), request)
                logger.info("Investigation of %s %s: %s (%d%%)", request.anchor_type,
                            request.anchor.get("id"), verdict.status, verdict.confidence)
                return verdict
            except (EscalationTimeoutError, EscalationInvalidReferenceError):
                raise
            except Exception as e:
                last_error = e
                logger.warning("Investigation attempt %d/%d failed: %s", attempt, self.max_attempts, e)
            if attempt < self.max_attempts:
                self.sleep(min(delay, max(0.0, deadline - time.monotonic())))
                delay *= self.backoff_multiplier

        raise EscalationError(f"Investigation failed after {self.max_attempts} attempts: {last_error}",
                              details={"attempts": self.max_attempts})
