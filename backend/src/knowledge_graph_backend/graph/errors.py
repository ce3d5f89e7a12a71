"""Custom exceptions for the graph module.

This module defines exceptions specific to community and importance operations:
- GraphFetchError: Raised when the graph accessor cannot supply graph data
- CommunityDetectionError: Raised when community detection fails
- CompletionError: Raised when an LLM completion fails or is malformed
- CommunityStorageError: Raised when persisting or loading results fails
"""

from typing import Optional


class GraphFetchError(Exception):
    """Raised when graph data cannot be fetched from the graph store.

    Attributes:
        operation: The accessor operation that failed
        reason: Error description
    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Graph fetch failed during {operation}: {reason}")


class CommunityDetectionError(Exception):
    """Raised when community detection fails.

    Attributes:
        message: Error description
        mode: The detection mode that was running (full, incremental, subgraph)
    """

    def __init__(self, message: str, mode: Optional[str] = None) -> None:
        self.message = message
        self.mode = mode
        prefix = f"Community detection ({mode}) failed" if mode else "Community detection failed"
        super().__init__(f"{prefix}: {message}")


class CompletionError(Exception):
    """Raised when an LLM completion call fails or returns malformed output.

    Attributes:
        reason: Error description
        model: The model that was called (if known)
    """

    def __init__(self, reason: str, model: Optional[str] = None) -> None:
        self.reason = reason
        self.model = model
        super().__init__(f"Completion failed: {reason}")


class CommunityStorageError(Exception):
    """Raised when community results cannot be persisted or loaded.

    Attributes:
        operation: The storage operation that failed
        reason: Error description
    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Storage error during {operation}: {reason}")
