from __future__ import annotations


class AuthorizationError(Exception):
    """Raised when the policy denies an operation; ``reason`` is user facing."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
