"""Execution gateway: admission control and safe qmd invocation."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time

from .config import BridgeConfig
from .constants import ALLOWED_COMMANDS, MAX_QUERY_LENGTH
from .errors import (
    ExecutionFailed,
    ExecutionTimeout,
    InvalidCommand,
    InvalidRequest,
    QueryTooLong,
    TooManyRequests,
)
from .observability.metrics import ACTIVE_EXECUTIONS, EXECUTION_COUNT, EXECUTION_LATENCY, track_latency
from .process import OutputLimitError, ProcessFailedError, ProcessTimeoutError, run_process


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    output: str
    elapsed_time_ms: int


class CommandExecutor:
    """Runs whitelisted qmd queries scoped to one collection.

    Admission is fail-fast: once ``max_concurrent`` calls are in flight the
    next one is rejected with :class:`TooManyRequests` instead of waiting.
    The in-flight counter is owned by this instance; the check and the
    increment happen without an intervening ``await``.
    """

    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    async def execute(self, command: str, query: str, collection: str) -> ExecutionResult:
        if command not in ALLOWED_COMMANDS:
            raise InvalidCommand(f"Command not in allowed list: {command!r}")
        if not query:
            raise InvalidRequest("Query is required")
        if len(query) > MAX_QUERY_LENGTH:
            raise QueryTooLong(f"Query exceeds maximum length of {MAX_QUERY_LENGTH} characters")
        if not collection:
            raise InvalidRequest("Collection is required")

        server = self.config.server()
        qmd_path = self.config.qmd_path()

        if server.max_concurrent > 0 and self._active >= server.max_concurrent:
            EXECUTION_COUNT.labels(command=command, status="rejected").inc()
            raise TooManyRequests(f"{self._active} executions in flight (limit {server.max_concurrent})")

        self._active += 1
        ACTIVE_EXECUTIONS.set(self._active)
        start = time.perf_counter()
        status = "error"
        try:
            argv = [qmd_path, command, query, "-c", collection]
            try:
                with track_latency(EXECUTION_LATENCY, command=command):
                    result = await run_process(
                        argv,
                        timeout_s=server.execution_timeout_ms / 1000,
                        max_output_bytes=server.max_output_bytes,
                    )
            except ProcessTimeoutError as exc:
                status = "timeout"
                raise ExecutionTimeout(str(exc)) from exc
            except OutputLimitError as exc:
                raise ExecutionFailed(str(exc)) from exc
            except ProcessFailedError as exc:
                logger.warning(
                    "qmd %s failed for collection %s: %s",
                    command,
                    collection,
                    exc,
                    extra={"returncode": exc.returncode, "stderr": exc.stderr},
                )
                raise ExecutionFailed(str(exc)) from exc

            status = "ok"
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logger.info(
                "qmd execution completed",
                extra={"command": command, "collection": collection, "elapsed_time_ms": elapsed_ms},
            )
            return ExecutionResult(output=result.stdout, elapsed_time_ms=elapsed_ms)
        finally:
            self._active -= 1
            ACTIVE_EXECUTIONS.set(self._active)
            EXECUTION_COUNT.labels(command=command, status=status).inc()
