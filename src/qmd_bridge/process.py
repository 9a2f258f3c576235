"""Bounded subprocess runner shared by the gateway and the indexer."""

from __future__ import annotations

import asyncio
from asyncio.subprocess import PIPE
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass
import logging


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_STDERR_TAIL_BYTES = 4096


class ProcessError(RuntimeError):
    """Base class for subprocess failures."""


class ProcessTimeoutError(ProcessError):
    """The process exceeded its deadline and was killed."""


class ProcessFailedError(ProcessError):
    """The process could not start or exited with a non-zero status."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class OutputLimitError(ProcessFailedError):
    """The process wrote more than the allowed number of bytes to stdout."""


@dataclass(slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    returncode: int


async def run_process(
    argv: Sequence[str],
    *,
    timeout_s: float,
    max_output_bytes: int,
) -> ProcessResult:
    """Run ``argv`` without a shell and return its decoded output.

    The child is killed when the deadline passes, when stdout grows past
    ``max_output_bytes``, or when the awaiting task is cancelled.
    """

    try:
        process = await asyncio.create_subprocess_exec(*argv, stdin=asyncio.subprocess.DEVNULL, stdout=PIPE, stderr=PIPE)
    except (FileNotFoundError, PermissionError) as err:
        raise ProcessFailedError(f"Cannot execute {argv[0]!r}: {err}") from err

    overflowed = False

    async def read_stdout() -> bytes:
        nonlocal overflowed
        assert process.stdout is not None
        buffer = bytearray()
        while chunk := await process.stdout.read(_CHUNK_SIZE):
            buffer.extend(chunk)
            if len(buffer) > max_output_bytes:
                overflowed = True
                _kill(process)
                break
        return bytes(buffer)

    async def read_stderr() -> bytes:
        assert process.stderr is not None
        tail = bytearray()
        while chunk := await process.stderr.read(_CHUNK_SIZE):
            tail.extend(chunk)
            del tail[:-_STDERR_TAIL_BYTES]
        return bytes(tail)

    try:
        stdout, stderr, returncode = await asyncio.wait_for(
            asyncio.gather(read_stdout(), read_stderr(), process.wait()),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        raise ProcessTimeoutError(f"{argv[0]} did not finish within {timeout_s:.1f}s") from None
    finally:
        if process.returncode is None:
            _kill(process)
            with suppress(ProcessLookupError):
                await process.wait()

    stderr_text = stderr.decode("utf-8", errors="replace").strip()
    if overflowed:
        raise OutputLimitError(
            f"{argv[0]} produced more than {max_output_bytes} bytes of output",
            returncode=returncode,
            stderr=stderr_text,
        )
    if returncode != 0:
        raise ProcessFailedError(
            f"{argv[0]} exited with status {returncode}",
            returncode=returncode,
            stderr=stderr_text,
        )
    return ProcessResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr_text,
        returncode=returncode,
    )


def _kill(process: asyncio.subprocess.Process) -> None:
    with suppress(ProcessLookupError):
        process.kill()
