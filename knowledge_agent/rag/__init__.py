"""Retrieval-augmented answer pipeline: routing, retrieval, grounded streaming."""
