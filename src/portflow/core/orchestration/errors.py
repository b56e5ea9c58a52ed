from __future__ import annotations


class SanitizationError(ValueError):
    """Input refused by the sanitizer. ``code`` is one of the fixed rejection codes."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class DecompositionError(ValueError):
    pass


class SessionRoleMismatch(PermissionError):
    def __init__(self, session_id: str, expected: str, actual: str) -> None:
        super().__init__(f"session {session_id} belongs to role {expected}, not {actual}")
        self.session_id = session_id
        self.expected = expected
        self.actual = actual


class SessionOwnerMismatch(PermissionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} belongs to another caller")
        self.session_id = session_id
