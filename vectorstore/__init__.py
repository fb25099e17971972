"""Vector store module for the knowledge agent.

Provides OpenAI query embedding and read access to the ChromaDB knowledge
index that backs retrieval.
"""
