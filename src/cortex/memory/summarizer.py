"""Conversation summarizer - compresses a batch of turns into a Summary.

Heuristic and lossy: topics are short questions found in the text, key
terms are the first distinct long-ish words. Output is deterministic for a
given batch and ``now``.
"""

import re
from collections.abc import Sequence

from cortex.core.logging import get_logger
from cortex.memory.types import ConversationEntry, Role, Summary, now_ms

logger = get_logger("memory.summarizer")

MAX_TOPICS = 5
MAX_KEY_TERMS = 15
MAX_TOPIC_LENGTH = 100
MIN_TERM_LENGTH = 5

QUESTION_PATTERN = re.compile(r"[^.?!]+\?")
NON_ALNUM_PATTERN = re.compile(r"[^a-z0-9]")


def extract_topics(text: str) -> list[str]:
    """Short questions in ``text``, in order of appearance."""
    if "?" not in text:
        return []
    return [
        match.strip()
        for match in QUESTION_PATTERN.findall(text)
        if len(match) < MAX_TOPIC_LENGTH and match.strip() != "?"
    ]


def extract_terms(text: str) -> list[str]:
    """Normalized whitespace tokens of at least MIN_TERM_LENGTH characters."""
    terms = []
    for word in text.split():
        normalized = NON_ALNUM_PATTERN.sub("", word.lower())
        if len(normalized) >= MIN_TERM_LENGTH:
            terms.append(normalized)
    return terms


def summarize(entries: Sequence[ConversationEntry], now: int | None = None) -> Summary:
    """Summarize an ordered batch of conversation entries.

    Never raises for a non-empty batch: on internal failure a degraded
    summary (``error=True``) still records how many entries it stands for.
    """
    if not entries:
        raise ValueError("Cannot summarize an empty batch")

    timestamp = now_ms() if now is None else now
    try:
        start_time = entries[0].timestamp
        end_time = entries[-1].timestamp

        # dicts as ordered sets
        topics: dict[str, None] = {}
        terms: dict[str, None] = {}
        user_messages = 0
        assistant_messages = 0

        for entry in entries:
            if entry.role == Role.USER:
                user_messages += 1
            elif entry.role == Role.ASSISTANT:
                assistant_messages += 1

            content = entry.content or ""
            for topic in extract_topics(content):
                topics.setdefault(topic, None)
            for term in extract_terms(content):
                terms.setdefault(term, None)

        return Summary(
            conversation_count=len(entries),
            timestamp=timestamp,
            start_time=start_time,
            end_time=end_time,
            duration_ms=end_time - start_time,
            user_messages=user_messages,
            assistant_messages=assistant_messages,
            primary_topics=tuple(topics)[:MAX_TOPICS],
            key_terms=tuple(terms)[:MAX_KEY_TERMS],
        )
    except Exception as e:
        logger.warning(f"Summarization failed for {len(entries)} entries: {e}")
        return Summary(conversation_count=len(entries), timestamp=timestamp, error=True)
