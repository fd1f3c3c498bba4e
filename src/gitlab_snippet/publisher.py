"""Read the input and drive the project lookup / snippet creation sequence."""

from __future__ import annotations

import asyncio
import enum
import os
import sys
from typing import BinaryIO, Optional, Tuple

from .client import GitLabClient, Project, Snippet, SnippetRequest
from .config import DEFAULT_VISIBILITY_LEVEL, EffectiveConfig
from .errors import FileAccessError
from .logging import get_logger


STDIN_SENTINEL = "-"
STDIN_FILE_NAME = "stdin"
READ_CHUNK_SIZE = 64 * 1024


class PublishState(enum.Enum):
    READING_INPUT = "reading_input"
    LOOKING_UP_PROJECT = "looking_up_project"
    CREATING_SNIPPET = "creating_snippet"
    DONE = "done"
    FAILED = "failed"


def check_source(filename: str) -> None:
    """Fail fast when the input cannot be read.

    Pipes and character devices such as `/dev/stdin` are accepted; only
    directories and paths without read permission are rejected.
    """

    if filename == STDIN_SENTINEL:
        return
    if not os.access(filename, os.R_OK) or os.path.isdir(filename):
        raise FileAccessError(f"file is not accessible: {filename}")


def _read_stream(stream: BinaryIO) -> bytes:
    chunks = []
    while True:
        chunk = stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def _read_source(filename: str, stdin: Optional[BinaryIO]) -> bytes:
    if filename == STDIN_SENTINEL:
        return _read_stream(stdin if stdin is not None else sys.stdin.buffer)
    try:
        with open(filename, "rb") as handle:
            return _read_stream(handle)
    except OSError as exc:
        raise FileAccessError(f"file is not accessible: {filename}: {exc.strerror or exc}") from exc


async def read_input(filename: str, stdin: Optional[BinaryIO] = None) -> bytes:
    """Buffer the whole input, from ``stdin`` for the ``-`` sentinel."""

    return await asyncio.to_thread(_read_source, filename, stdin)


def is_stream(filename: str) -> bool:
    """True for inputs that may never reach end-of-file: stdin, pipes, FIFOs."""

    return filename == STDIN_SENTINEL or not os.path.isfile(filename)


def build_request(
    project_id: int,
    filename: str,
    content: bytes,
    lang: Optional[str] = None,
    visibility_level: int = DEFAULT_VISIBILITY_LEVEL,
) -> SnippetRequest:
    stem = STDIN_FILE_NAME if filename == STDIN_SENTINEL else filename
    suffix = f".{lang.lower()}" if lang else ""
    return SnippetRequest(
        project_id=project_id,
        title=filename,
        file_name=os.path.basename(stem + suffix),
        visibility_level=visibility_level,
        content=content,
    )


class SnippetPublisher:
    """Publish one input as a snippet.

    A regular file is buffered while the project lookup is in flight and
    snippet creation starts once both have completed. Streams are only read
    after the lookup succeeds, so a failed lookup is reported without waiting
    for the writer to close the pipe.
    """

    def __init__(
        self,
        config: EffectiveConfig,
        client: GitLabClient,
        lang: Optional[str] = None,
        stdin: Optional[BinaryIO] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.lang = lang
        self.stdin = stdin
        self.state = PublishState.READING_INPUT
        self.logger = get_logger("gitlab_snippet.publisher")

    async def publish(self, filename: str) -> Snippet:
        try:
            if is_stream(filename):
                project = await self._lookup()
                content = await self._read(filename)
            else:
                content, project = await self._read_while_looking_up(filename)
            self._transition(PublishState.CREATING_SNIPPET)
            request = build_request(
                project.id,
                filename,
                content,
                lang=self.lang,
                visibility_level=self.config.visibility_level,
            )
            snippet = await self.client.create_snippet(request)
        except Exception:
            self._transition(PublishState.FAILED)
            raise
        self._transition(PublishState.DONE)
        return snippet

    async def _read_while_looking_up(self, filename: str) -> Tuple[bytes, Project]:
        read_task = asyncio.ensure_future(self._read(filename))
        lookup_task = asyncio.ensure_future(self._lookup())
        try:
            return await asyncio.gather(read_task, lookup_task)
        except Exception:
            for task in (read_task, lookup_task):
                task.cancel()
            raise

    async def _read(self, filename: str) -> bytes:
        self._transition(PublishState.READING_INPUT)
        content = await read_input(filename, self.stdin)
        self.logger.debug("Input buffered", extra={"source": filename, "size": len(content)})
        return content

    async def _lookup(self) -> Project:
        self._transition(PublishState.LOOKING_UP_PROJECT)
        project = await self.client.get_project(self.config.project_ref)
        self.logger.debug(
            "Resolved project",
            extra={"project_ref": self.config.project_ref, "project_id": project.id},
        )
        return project

    def _transition(self, state: PublishState) -> None:
        if self.state is not state:
            self.logger.debug(
                "Publisher state change",
                extra={"from_state": self.state.value, "to_state": state.value},
            )
        self.state = state
