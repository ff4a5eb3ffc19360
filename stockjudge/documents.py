"""
RAG documents and the per-run bundle that feeds every judgement stage.

Documents are immutable and identified by ``doc_id`` + ``asOf``; a bundle is
built once per run and only ever read afterwards.
"""

from __future__ import annotations
import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

RAG_VERSION = "rag_v1.0"

PROMPT_CHAR_BUDGET = 120_000
REFERENCE_CHAR_BUDGET = 8_000
TRUNCATION_MARKER = "\n...TRUNCATED..."

# Caps for the bundle used during generation
BUNDLE_MAX_NEWS = 16
BUNDLE_MAX_CANDLES = 120

# Caps for the persisted audit copy
STORED_MAX_NEWS = 20
STORED_MAX_CANDLES = 80
STORED_MAX_PEERS = 8
STORED_MAX_QUOTES = 12


class DocType(str, Enum):
    COMPANY_PROFILE = "company_profile"
    INCOME_STATEMENT = "income_statement"
    BALANCE_SHEET = "balance_sheet"
    CASHFLOW = "cashflow"
    EARNINGS_EVENT = "earnings_event"
    NEWS = "news"
    MARKET_BEHAVIOR = "market_behavior"
    PEER_COMPARISON = "peer_comparison"


_DOC_ORDER = {t: i for i, t in enumerate(DocType)}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def make_doc_id(symbol: str, doc_type: DocType, period: str) -> str:
    return f"{symbol}/{doc_type.value}/{period}"


@dataclass(frozen=True)
class Document:
    doc_id: str
    symbol: str
    type: DocType
    period: str
    source: str
    as_of: str
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "symbol": self.symbol,
            "type": self.type.value,
            "period": self.period,
            "source": self.source,
            "asOf": self.as_of,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class RagBundle:
    rag_version: str
    symbol: str
    as_of: str
    docs: Tuple[Document, ...] = field(default_factory=tuple)

    @property
    def doc_ids(self) -> List[str]:
        return [d.doc_id for d in self.docs]

    def doc(self, doc_type: DocType) -> Optional[Document]:
        for d in self.docs:
            if d.type == doc_type:
                return d
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rag_version": self.rag_version,
            "symbol": self.symbol,
            "asOf": self.as_of,
            "docs": [d.to_dict() for d in self.docs],
        }

    def meta(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "asOf": self.as_of, "doc_ids": self.doc_ids}


def build_rag_bundle(symbol: str, documents: Iterable[Document], as_of: Optional[str] = None) -> RagBundle:
    """Assemble collected documents into a bundle. No I/O.

    One document per doc_id survives (the first seen); order is the fixed
    type order so the bundle reads the same however sources completed.
    """
    seen = set()
    docs: List[Document] = []
    for d in documents:
        if d is None or d.doc_id in seen:
            continue
        seen.add(d.doc_id)
        docs.append(d)
    docs.sort(key=lambda d: (_DOC_ORDER.get(d.type, len(_DOC_ORDER)), d.doc_id))
    return RagBundle(
        rag_version=RAG_VERSION,
        symbol=symbol,
        as_of=as_of or utc_now_iso(),
        docs=tuple(docs),
    )


def compute_input_hash(symbol: str, question: str, bundle: RagBundle) -> str:
    """Stable cache/reproducibility key over symbol, question and doc identities."""
    doc_keys = sorted(
        ({"id": d.doc_id, "type": d.type.value, "asOf": d.as_of} for d in bundle.docs),
        key=lambda k: (k["id"], k["type"], k["asOf"]),
    )
    body = json.dumps(
        {
            "symbol": symbol,
            "question": question or "",
            "rag_version": bundle.rag_version,
            "docs": doc_keys,
        },
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _minimize_doc(d: Document) -> Document:
    p = d.payload
    if d.type == DocType.MARKET_BEHAVIOR:
        p = p if isinstance(p, dict) else {}
        candles = p.get("candles") if isinstance(p.get("candles"), list) else []
        return replace(d, payload={"summary": p.get("summary"), "candles": candles[-STORED_MAX_CANDLES:]})
    if d.type == DocType.NEWS:
        items = p if isinstance(p, list) else (p.get("items") if isinstance(p, dict) else None)
        return replace(d, payload=list(items or [])[:STORED_MAX_NEWS])
    if d.type == DocType.PEER_COMPARISON:
        p = p if isinstance(p, dict) else {}
        peers = p.get("peers") if isinstance(p.get("peers"), list) else []
        quotes = p.get("quotes") if isinstance(p.get("quotes"), list) else []
        return replace(d, payload={"peers": peers[:STORED_MAX_PEERS], "quotes": quotes[:STORED_MAX_QUOTES]})
    # statements and profile are already slim
    return d


def minimize_rag_bundle(bundle: RagBundle) -> RagBundle:
    """Audit copy with bounded size; generation always uses the full bundle."""
    return replace(bundle, docs=tuple(_minimize_doc(d) for d in bundle.docs))


def json_for_prompt(obj: Any, max_chars: int) -> str:
    text = json.dumps(obj if obj is not None else {}, ensure_ascii=False, indent=2, default=str)
    if len(text) > max_chars:
        return text[:max_chars] + TRUNCATION_MARKER
    return text


def bundle_for_prompt(bundle: RagBundle, max_chars: int = PROMPT_CHAR_BUDGET) -> str:
    return json_for_prompt(bundle.to_dict(), max_chars)


def bundle_reference(bundle: RagBundle, max_chars: int = REFERENCE_CHAR_BUDGET) -> str:
    """Compact pointer to the bundle (ids + asOf only) for the final stage."""
    return json_for_prompt({"doc_ids": bundle.doc_ids, "asOf": bundle.as_of}, max_chars)
