"""Streaming chat backend with document-grounded answers and image tools."""
