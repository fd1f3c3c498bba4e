"""Error taxonomy for the snippet publisher.

Every error is fatal: the CLI prints a diagnostic and exits with status 1.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple


class SnippetError(Exception):
    """Base exception for gitlab_snippet."""


class ConfigError(SnippetError):
    """Missing or unusable configuration (token, host, project, TLS files)."""


class FileAccessError(SnippetError):
    """Input file is missing or unreadable."""


class TransportError(SnippetError):
    """Connection, DNS, TLS or timeout failure talking to the API."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is None:
            return base
        return f"{base}: {self.cause!r}"


class BadRequestError(SnippetError):
    """HTTP 400 response, broken down into field/message pairs."""

    def __init__(self, errors: Sequence[Tuple[str, str]], message: str = "Bad Request") -> None:
        super().__init__(message)
        self.errors: List[Tuple[str, str]] = list(errors)


class ResponseShapeError(SnippetError):
    """A response decoded fine but lacks the expected ``id`` field."""

    def __init__(self, message: str, platform_message: object = None) -> None:
        super().__init__(message)
        self.platform_message = platform_message

    def __str__(self) -> str:
        base = super().__str__()
        if self.platform_message is None:
            return base
        return f"{base}: {self.platform_message}"


class JSONParseError(SnippetError):
    """Response body is not valid JSON."""

    def __init__(self, detail: str, body: str) -> None:
        super().__init__(f"failed to parse JSON: {detail}, source: {body}")
        self.detail = detail
        self.body = body
