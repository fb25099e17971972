"""System and instruction prompts for the knowledge agent.

Grounded answer generation for a voice assistant, plus the small JSON
prompts the router uses for back-reference resolution and for naming the
entity an answer talks about.
"""

# ---------------------------------------------------------------------------
# Fixed user-visible messages
# ---------------------------------------------------------------------------

LEAD_IN = "Agent's Reply:- "

NO_MATCHES_MESSAGE = "I could not find relevant information to answer your query."

EMPTY_CONTEXT_MESSAGE = "I found related documents, but couldn't extract usable context."

CONTEXT_SEPARATOR = "\n\n---\n\n"


# ---------------------------------------------------------------------------
# Answer Synthesis: grounded generation from the retrieved context only
# ---------------------------------------------------------------------------

ANSWER_SYSTEM_TEMPLATE = """\
You are a helpful assistant. Answer the user's query based *only* on the provided context.
If the context does not contain the information needed to answer the query, state that clearly.
Do not make up information. Be concise and directly address the query. Give this answer in a form suited for a voice assistant.

Rules:
- If the user's question asks about a specific person, you must **only respond** if the context explicitly contains that person.
- Do NOT guess or assume facts based on similar people.
- If the context doesn't mention that person, say: "The context does not include information about [person]."
- Make sure you don't answer wrong information about people and only answer if the context has their information.

Context:
---
{context}
---
"""

REFUSAL_TEMPLATE = "The context does not include information about {person}."


def build_answer_prompt(context: str) -> str:
    """Fill the answer instruction with the assembled context."""
    # str.replace, not format(): retrieved text may contain braces
    return ANSWER_SYSTEM_TEMPLATE.replace("{context}", context)


# ---------------------------------------------------------------------------
# Router: back-reference resolution
# ---------------------------------------------------------------------------

RESOLVE_SYSTEM = """\
You resolve follow-up questions in a conversation with a knowledge assistant.

Given the user's previous question, the entity remembered from the previous turn \
(may be "none") and the new question, decide whether the new question refers back \
to a person or entity from the previous turn (e.g. "what about him?", "what does she do?").

Return a JSON object (no markdown fences) with these fields:
{
  "should_rewrite": true|false,
  "expanded_query": "the new question rewritten to be fully self-contained, or the question unchanged",
  "resolved_entity": "full name of the person/entity the question is about, or null",
  "reason": "one short sentence"
}

Only name an entity that literally appears in the previous question, the remembered \
entity, or the new question. If unsure, return should_rewrite false and resolved_entity null.
"""

RESOLVE_USER = """\
Previous question: {last_query}
Remembered entity: {last_entity}
New question: {query}

Return the JSON object."""


# ---------------------------------------------------------------------------
# Entity extraction: name the subject of a completed answer
# ---------------------------------------------------------------------------

EXTRACT_ENTITY_SYSTEM = """\
You identify the single most salient person discussed in an assistant's answer.

Return a JSON object (no markdown fences): {"entity": "Full Name"} or {"entity": null} \
when the answer does not clearly discuss one person. Copy the name exactly as written \
in the answer. Never invent a name.
"""

EXTRACT_ENTITY_USER = """\
Answer:
{text}

Return the JSON object."""
