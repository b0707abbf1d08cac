"""Conversation context retrieval for grounding model calls."""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Protocol

from tutorbot.db import Database
from tutorbot.errors import ContextRetrievalError

LOGGER = logging.getLogger(__name__)

DEFAULT_TOP_K = 20
DEFAULT_MAX_TOKENS = 4096
DEFAULT_SCORE_THRESHOLD = 0.5
RECENCY_WINDOW = timedelta(days=7)
RECENCY_BOOST = 2.0
CHARS_TO_TOKENS = 0.25

_WORD = re.compile(r"[a-z0-9']+")
_STOPWORDS = frozenset(
    "a an and are at be can do for from i in is it me my of on or so that the this to we with you".split()
)


@dataclass(slots=True)
class ContextDocument:
    id: str
    content: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RAGContext:
    documents: list[ContextDocument]
    total_tokens: int
    retrieval_time_ms: int
    source: str


class Retriever(Protocol):
    """Similarity search scoped to one conversation."""

    name: str

    async def search(
        self,
        query: str,
        conversation_id: str,
        top_k: int,
        score_threshold: float,
    ) -> list[ContextDocument]: ...


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) * CHARS_TO_TOKENS)


async def get_context(
    query: str,
    conversation_id: str,
    retriever: Retriever,
    top_k: int = DEFAULT_TOP_K,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    score_threshold: float = DEFAULT_SCORE_THRESHOLD,
    now: datetime | None = None,
    exclude_ids: Iterable[str] = (),
) -> RAGContext:
    """Fetch, rank and budget prior messages relevant to ``query``.

    Raises:
        ContextRetrievalError: if the retriever fails.
    """

    started = time.monotonic()
    now = now or datetime.now(timezone.utc)
    try:
        results = await retriever.search(query, conversation_id, top_k, score_threshold)
    except Exception as exc:
        LOGGER.error("Context retrieval failed for conversation=%s: %s", conversation_id[:12], exc)
        raise ContextRetrievalError(f"{ContextRetrievalError.code}: {exc}") from exc

    excluded = set(exclude_ids)
    boosted = [_with_recency_boost(doc, now) for doc in results if doc.id not in excluded]
    boosted.sort(key=lambda doc: doc.score, reverse=True)

    selected: list[ContextDocument] = []
    total_tokens = 0
    for doc in boosted:
        tagged = _minimize_pii(doc)
        tokens = estimate_tokens(tagged.content)
        if total_tokens + tokens > max_tokens:
            break
        selected.append(tagged)
        total_tokens += tokens

    elapsed = int((time.monotonic() - started) * 1000)
    LOGGER.info(
        "Context for conversation=%s: %d/%d docs, %d tokens, %dms",
        conversation_id[:12],
        len(selected),
        len(results),
        total_tokens,
        elapsed,
    )
    return RAGContext(documents=selected, total_tokens=total_tokens, retrieval_time_ms=elapsed, source=retriever.name)


def format_context_for_prompt(context: RAGContext) -> str:
    if not context.documents:
        return "No relevant context found."
    lines = []
    for index, doc in enumerate(context.documents, start=1):
        timestamp = doc.metadata.get("timestamp")
        stamp = f" ({timestamp:%Y-%m-%d %H:%M} UTC)" if isinstance(timestamp, datetime) else ""
        lines.append(f"{index}.{stamp} {doc.content}")
    return "Relevant conversation history:\n" + "\n".join(lines)


def _with_recency_boost(doc: ContextDocument, now: datetime) -> ContextDocument:
    timestamp = doc.metadata.get("timestamp")
    if isinstance(timestamp, datetime) and now - timestamp <= RECENCY_WINDOW:
        return ContextDocument(doc.id, doc.content, doc.score * RECENCY_BOOST, dict(doc.metadata))
    return doc


def _minimize_pii(doc: ContextDocument) -> ContextDocument:
    metadata = dict(doc.metadata)
    sender_id = str(metadata.get("sender_id") or "unknown")
    sender_name = metadata.pop("sender_name", None)
    tag = f"[User {sender_id[:8]}]"
    content = doc.content
    if sender_name:
        content = content.replace(str(sender_name), tag)
    return ContextDocument(doc.id, f"{tag} {content}", doc.score, metadata)


class MessageHistoryRetriever:
    """Lexical-overlap retriever over the stored conversation history."""

    name = "message_history"

    def __init__(self, db: Database, window: int = 200) -> None:
        self._db = db
        self._window = window

    async def search(
        self,
        query: str,
        conversation_id: str,
        top_k: int,
        score_threshold: float,
    ) -> list[ContextDocument]:
        terms = _terms(query)
        if not terms:
            return []
        scored: list[ContextDocument] = []
        for message in self._db.get_recent_messages(conversation_id, self._window):
            overlap = len(terms & _terms(message["text"])) / len(terms)
            if overlap < score_threshold:
                continue
            scored.append(
                ContextDocument(
                    id=message["id"],
                    content=message["text"],
                    score=overlap,
                    metadata={
                        "timestamp": message["created_at"],
                        "sender_id": message["sender_id"],
                        "sender_name": message["sender_name"],
                        "role": message["role"],
                    },
                )
            )
        scored.sort(key=lambda doc: doc.score, reverse=True)
        return scored[:top_k]


def _terms(text: str) -> set[str]:
    return {word for word in _WORD.findall(text.lower()) if word not in _STOPWORDS}
