"""Command-line entry point: publish a file as a GitLab snippet."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Iterable, NoReturn, Optional

from . import __version__
from .client import GitLabClient, Snippet
from .config import CONFIG_ENV_PREFIX, EffectiveConfig, default_config_path, resolve_config
from .errors import SnippetError
from .logging import LOG_FORMATS, LOG_LEVELS, configure_logging, get_logger
from .publisher import SnippetPublisher, check_source
from .reporter import report_failure, report_success


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{CONFIG_ENV_PREFIX}{name}", default)


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser exiting with status 1 on usage errors."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="gitlab-snippet",
        description="Creates a Gitlab snippet.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Environment:
  {CONFIG_ENV_PREFIX}TOKEN, {CONFIG_ENV_PREFIX}HOST   used when the config file is not readable
  {CONFIG_ENV_PREFIX}PROJECT                 default project reference
  {CONFIG_ENV_PREFIX}CONFIG                  default config file path

Examples:
  %(prog)s -p group/project script.py
  git diff | %(prog)s -p 42 -l diff -
        """,
    )
    parser.add_argument(
        "filename",
        nargs="?",
        metavar="FILENAME",
        help="Path to the source file, or `-' for STDIN.",
    )
    parser.add_argument(
        "-c",
        "--conf",
        "--config",
        dest="conf",
        default=_env("CONFIG"),
        help=f"Config file. Default: {default_config_path()}",
    )
    parser.add_argument(
        "-p",
        "--project",
        help="Project 'path/namespace', or numeric project ID.",
    )
    parser.add_argument(
        "-l",
        "--lang",
        help=(
            "Language (filename extension such as php, js, pl etc.). "
            "Useful when input is STDIN."
        ),
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Request timeout in seconds (default: httpx default).",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=(_env("LOG_LEVEL") or "WARNING").upper(),
        help=f"Log verbosity (env: {CONFIG_ENV_PREFIX}LOG_LEVEL). Logs go to stderr.",
    )
    parser.add_argument(
        "--log-format",
        choices=LOG_FORMATS,
        default=_env("LOG_FORMAT", "plain"),
        help=f"Log format (env: {CONFIG_ENV_PREFIX}LOG_FORMAT).",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _build_client(config: EffectiveConfig) -> GitLabClient:
    return GitLabClient(config)


async def _publish(config: EffectiveConfig, filename: str, lang: Optional[str]) -> Snippet:
    async with _build_client(config) as client:
        publisher = SnippetPublisher(config, client, lang=lang)
        return await publisher.publish(filename)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=None if argv is None else list(argv))

    if not args.filename:
        sys.stderr.write("filename expected\n")
        parser.print_usage(sys.stderr)
        sys.exit(1)

    try:
        configure_logging(args.log_level, args.log_format)
    except ValueError as exc:
        parser.error(str(exc))
    logger = get_logger("gitlab_snippet")

    try:
        config = resolve_config(args.conf, project_override=args.project, timeout=args.timeout)
        check_source(args.filename)
        snippet = asyncio.run(_publish(config, args.filename, args.lang))
    except SnippetError as exc:
        logger.debug("Aborting", exc_info=True)
        sys.exit(report_failure(exc))
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted\n")
        sys.exit(1)

    report_success(config, snippet)


if __name__ == "__main__":
    main()
