"""Query router: follow-up resolution against short-term memory.

Decision rules, in order:
  1. An explicit proper-noun reference in the query wins ("Tell me about
     Maria Lopez"): it becomes the resolved entity, no rewrite. When the
     query also holds a pronoun, only a multi-word name counts; a lone
     capitalized word beside it (a place, a product) leaves the pronoun to
     the rules below.
  2. A person back-reference ("what does she do?") with a remembered entity is
     rewritten by substituting the entity for the pronoun.
  3. A back-reference with nothing remembered asks the EntityResolver (one LLM
     call). The resolved entity must literally occur in the query, the previous
     query or memory; anything else is discarded.
  4. Everything else passes through unchanged.

Routing never fails the request: resolver errors degrade to pass-through.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Optional, Protocol

from knowledge_agent.memory import ConversationMemory, MemoryRecord
from knowledge_agent.rag.llm import LLMClient, parse_json_response
from knowledge_agent.rag.prompts import (
    EXTRACT_ENTITY_SYSTEM,
    EXTRACT_ENTITY_USER,
    RESOLVE_SYSTEM,
    RESOLVE_USER,
)

logger = logging.getLogger(__name__)

MIN_EXTRACT_WORDS = 3
MAX_EXTRACT_CHARS = 4000


@dataclass
class RouterDecision:
    expanded_query: str
    should_rewrite: bool
    resolved_entity: Optional[str]
    reason: str

    @classmethod
    def pass_through(cls, query: str, reason: str) -> "RouterDecision":
        return cls(expanded_query=query, should_rewrite=False, resolved_entity=None, reason=reason)


# =========================================================
# PRONOUN / PROPER-NOUN DETECTION
# =========================================================

PRONOUN_PATTERN = re.compile(
    r"\b(he|she|him|her|his|hers|they|them|their|theirs|himself|herself|themselves)\b",
    flags=re.IGNORECASE,
)

POSSESSIVE_PRONOUNS = {"his", "their", "hers", "theirs"}

# "her" is possessive when a noun follows ("her role"), objective otherwise
# ("about her", "ask her to ...")
NON_NOUN_FOLLOWERS = {
    "and", "or", "but", "to", "in", "on", "at", "for", "with", "about", "from",
    "as", "if", "is", "was", "do", "does", "did", "now", "again", "too", "also",
    "then", "so", "yet", "anymore",
}

# Letter runs, with inner apostrophes and hyphens ("O'Brien", "Jean-Luc")
WORD_PATTERN = re.compile(r"[^\W\d_]+(?:['’\-][^\W\d_]+)*")

# Capitalized words that start questions or sentences but never name anyone
COMMON_WORDS = {
    "a", "about", "also", "an", "and", "are", "at", "based", "but", "can",
    "could", "describe", "did", "do", "does", "explain", "for", "give", "he",
    "hello", "hey", "hi", "how", "however", "i", "if", "in", "is", "it", "let",
    "list", "me", "my", "no", "of", "ok", "okay", "on", "our", "please", "she",
    "should", "show", "so", "sorry", "tell", "thanks", "that", "the", "their",
    "then", "there", "these", "they", "this", "those", "to", "unfortunately",
    "was", "we", "were", "what", "when", "where", "which", "who", "whom",
    "whose", "why", "will", "with", "would", "yes", "you", "your",
}


def has_back_reference(text: str) -> bool:
    """Return True when text refers back to a person with a pronoun."""
    return bool(text and PRONOUN_PATTERN.search(text))


def _is_capitalized(word: str) -> bool:
    # all-caps words ("CFO", "HIM") are acronyms or emphasis, not names
    return word[:1].isupper() and any(c.islower() for c in word)


def _capitalized_runs(text: str):
    """Yield (start, words) for each run of capitalized words joined by whitespace."""
    run: list[str] = []
    run_start = last_end = 0
    for match in WORD_PATTERN.finditer(text):
        word = match.group(0)
        if not _is_capitalized(word):
            if run:
                yield run_start, run
            run = []
            continue
        if run and text[last_end:match.start()].isspace():
            run.append(word)
        else:
            if run:
                yield run_start, run
            run, run_start = [word], match.start()
        last_end = match.end()
    if run:
        yield run_start, run


def find_proper_nouns(text: str) -> list[str]:
    """Return candidate names in order of appearance (with repeats).

    Runs of capitalized words are stripped of leading common words. A lone
    capitalized word at the start of a sentence is ignored: it is as likely
    to be an ordinary word as a name.
    """
    text = text or ""
    names = []
    for start, words in _capitalized_runs(text):
        preceding = text[:start].rstrip()
        at_sentence_start = not preceding or preceding[-1] in ".!?:\n\"'"

        stripped = 0
        while words and words[0].lower() in COMMON_WORDS:
            words.pop(0)
            stripped += 1
        while words and words[-1].lower() in COMMON_WORDS:
            words.pop()
        if not words:
            continue
        if len(words) == 1 and at_sentence_start and stripped == 0:
            continue

        name = " ".join(words)
        if name.endswith(("'s", "’s")):
            name = name[:-2]
        names.append(name)
    return names


def substitute_pronouns(query: str, entity: str) -> str:
    """Replace person pronouns in query with the entity name."""
    def replace(match: re.Match) -> str:
        pronoun = match.group(0).lower()
        rest = query[match.end():]
        next_word = re.match(r"\s+([A-Za-z]+)", rest)
        if pronoun in POSSESSIVE_PRONOUNS:
            return f"{entity}'s"
        if pronoun == "her" and next_word and next_word.group(1).lower() not in NON_NOUN_FOLLOWERS:
            return f"{entity}'s"
        return entity

    return PRONOUN_PATTERN.sub(replace, query)


def _mentioned_in(entity: str, *texts: Optional[str]) -> bool:
    needle = entity.lower()
    return any(t and needle in t.lower() for t in texts)


# =========================================================
# PLUGGABLE RESOLUTION
# =========================================================

class EntityResolver(Protocol):
    """Model-backed capability used when heuristics are insufficient."""

    def resolve(self, query: str, last_query: Optional[str], last_entity: Optional[str]) -> dict:
        ...

    def extract_entity(self, text: str) -> Optional[str]:
        ...


class LLMEntityResolver:
    """EntityResolver backed by JSON-returning chat prompts."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    def resolve(self, query: str, last_query: Optional[str], last_entity: Optional[str]) -> dict:
        raw = self.llm.chat(
            system=RESOLVE_SYSTEM,
            user=RESOLVE_USER.format(
                query=query,
                last_query=last_query or "none",
                last_entity=last_entity or "none",
            ),
            temperature=0.0,
            max_tokens=300,
        )
        result = parse_json_response(raw)
        if not isinstance(result, dict):
            raise ValueError(f"Expected a JSON object, got {type(result).__name__}")
        return result

    def extract_entity(self, text: str) -> Optional[str]:
        raw = self.llm.chat(
            system=EXTRACT_ENTITY_SYSTEM,
            user=EXTRACT_ENTITY_USER.format(text=text[:MAX_EXTRACT_CHARS]),
            temperature=0.0,
            max_tokens=60,
        )
        result = parse_json_response(raw)
        entity = result.get("entity") if isinstance(result, dict) else None
        return entity.strip() if isinstance(entity, str) and entity.strip() else None


# =========================================================
# ROUTER
# =========================================================

class QueryRouter:
    """Decides query rewriting and entity resolution for one request."""

    def __init__(self, memory: ConversationMemory, resolver: Optional[EntityResolver] = None):
        self.memory = memory
        self.resolver = resolver

    def route(
        self,
        query: str,
        last_query: Optional[str],
        user_id: str,
        record: Optional[MemoryRecord] = None,
    ) -> RouterDecision:
        """Decide rewrite and entity for one query.

        ``record`` is the memory snapshot the caller already read; the router
        reads memory itself only when it is not given.
        """
        explicit = find_proper_nouns(query)
        back_reference = has_back_reference(query)
        if back_reference:
            # beside a pronoun, only a full name replaces the referent;
            # "Is she based in London?" still asks about her
            explicit = [name for name in explicit if len(name.split()) > 1]
        if explicit:
            return RouterDecision(
                expanded_query=query,
                should_rewrite=False,
                resolved_entity=explicit[0],
                reason="explicit name in query",
            )

        if not back_reference:
            return RouterDecision.pass_through(query, "no back-reference")

        if record is None:
            record = self.memory.get(user_id)
        last_entity = record.last_entity
        if last_entity:
            return RouterDecision(
                expanded_query=substitute_pronouns(query, last_entity),
                should_rewrite=True,
                resolved_entity=last_entity,
                reason="pronoun resolved from memory",
            )

        if not last_query or self.resolver is None:
            return RouterDecision.pass_through(query, "back-reference with nothing remembered")

        return self._resolve_with_model(query, last_query)

    def _resolve_with_model(self, query: str, last_query: str) -> RouterDecision:
        try:
            result = self.resolver.resolve(query, last_query, None)
        except Exception as e:
            logger.warning("Router resolution failed, passing query through: %s", e)
            return RouterDecision.pass_through(query, "resolution failed")

        entity = result.get("resolved_entity")
        if not isinstance(entity, str) or not entity.strip():
            return RouterDecision.pass_through(query, "resolution inconclusive")
        entity = entity.strip()
        if not _mentioned_in(entity, query, last_query):
            logger.warning("Router discarded unsupported entity %r", entity)
            return RouterDecision.pass_through(query, "resolved entity not in conversation")

        expanded = result.get("expanded_query")
        if not isinstance(expanded, str) or not expanded.strip():
            expanded = substitute_pronouns(query, entity)
        return RouterDecision(
            expanded_query=expanded.strip(),
            should_rewrite=True,
            resolved_entity=entity,
            reason=str(result.get("reason") or "resolved by model"),
        )

    def extract_entity_name(self, text: str) -> Optional[str]:
        """Name the single most salient entity a completed answer discusses."""
        text = (text or "").strip()
        if len(text.split()) < MIN_EXTRACT_WORDS:
            return None

        if self.resolver is not None:
            entity = self.resolver.extract_entity(text)
            if entity and _mentioned_in(entity, text):
                return entity
            return None

        counts = Counter(find_proper_nouns(text))
        if not counts:
            return None
        # most_common keeps first-seen order among ties
        return counts.most_common(1)[0][0]
