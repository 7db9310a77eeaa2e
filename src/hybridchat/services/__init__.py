"""Collaborator services used by the chat pipeline."""
