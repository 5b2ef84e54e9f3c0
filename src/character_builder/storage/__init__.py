"""
Document store implementations for the Character Builder core.
"""

from .memory_store import InMemoryDocumentStore

__all__ = [
    "InMemoryDocumentStore",
]
