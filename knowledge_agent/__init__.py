"""Knowledge agent: retrieval-grounded answers with short-term conversational memory."""
