"""User-facing success and failure output."""

from __future__ import annotations

import sys
from typing import Optional, TextIO

from .client import Snippet
from .config import EffectiveConfig
from .errors import BadRequestError, JSONParseError, SnippetError, TransportError


def snippet_url(config: EffectiveConfig, snippet: Snippet) -> str:
    return f"{config.api_scheme}://{config.api_host}/{config.project_ref}/snippets/{snippet.id}"


def report_success(config: EffectiveConfig, snippet: Snippet, stream: Optional[TextIO] = None) -> int:
    """Print the public snippet URL; stdout carries nothing else."""

    out = stream if stream is not None else sys.stdout
    out.write(snippet_url(config, snippet) + "\n")
    out.flush()
    return 0


def report_failure(exc: SnippetError, stream: Optional[TextIO] = None) -> int:
    """Write a diagnostic for ``exc`` and return the exit status."""

    err = stream if stream is not None else sys.stderr
    if isinstance(exc, BadRequestError):
        err.write("!! Bad Request\n")
        for field_name, message in exc.errors:
            err.write(f"{field_name}: {message}\n")
        if not exc.errors and str(exc) != "Bad Request":
            err.write(f"{exc}\n")
        err.write("Aborted\n")
    elif isinstance(exc, TransportError):
        err.write(f"HTTP request failed: {exc}\n")
    elif isinstance(exc, JSONParseError):
        err.write(f"Error: failed to parse JSON: {exc.detail}\n")
        err.write(f"Response body: {exc.body}\n")
    else:
        err.write(f"Error: {exc}\n")
    err.flush()
    return 1
