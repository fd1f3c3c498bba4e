"""Publish a local file or standard input as a GitLab project snippet."""

__all__ = ["cli", "client", "config", "errors", "logging", "publisher", "reporter"]
__version__ = "1.0.0"
