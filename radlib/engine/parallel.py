# radlib/engine/parallel.py
from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any, Callable, Iterator, Optional, Union

from radlib.errors import ChunkCallbackError, RadError
from radlib.formats import chunk as chunk_codec
from radlib.formats import header as header_codec
from radlib.formats.chunk import Chunk, ChunkSpan
from radlib.formats.rad import iter_spans
from radlib.models.header import FileHeader
from radlib.models.record import Record
from radlib.utils.sources import ByteSource, Source
from radlib.utils.varint import ByteCursor

__all__ = [
    "ErrorPolicy",
    "CancelPolicy",
    "EngineOptions",
    "ChunkOutcome",
    "EngineResult",
    "ParallelDecodeEngine",
    "materialize",
    "process",
]

logger = logging.getLogger(__name__)

BACKENDS = ("thread", "process")


class ErrorPolicy(str, enum.Enum):
    FAIL_FAST = "fail_fast"     # first chunk error stops the run and is raised
    COLLECT = "collect"         # keep going; failures are delivered as outcomes


class CancelPolicy(str, enum.Enum):
    FINISH = "finish"           # in-flight chunks complete and are delivered
    ABANDON = "abandon"         # in-flight chunks are dropped unseen


# =========================
# Configuration
# =========================

@dataclass(slots=True)
class EngineOptions:
    workers: int = 1
    ordered: bool = True
    error_policy: ErrorPolicy = ErrorPolicy.FAIL_FAST
    on_cancel: CancelPolicy = CancelPolicy.FINISH
    max_pending: Optional[int] = None   # in-flight + buffered chunks; default 4 x workers
    backend: str = "thread"
    zero_copy: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError(f"workers must be a positive integer, got {self.workers!r}")
        self.error_policy = ErrorPolicy(self.error_policy)
        self.on_cancel = CancelPolicy(self.on_cancel)
        if self.max_pending is None:
            self.max_pending = 4 * self.workers
        elif self.max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {self.max_pending}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.backend == "process" and self.zero_copy:
            raise ValueError("zero_copy chunks cannot cross a process boundary")


# =========================
# Results
# =========================

@dataclass(slots=True)
class ChunkOutcome:
    """What the engine delivers for one chunk: the callback's value or the chunk's error."""
    index: int
    offset: int
    value: Any = None
    error: Optional[RadError] = None
    record_count: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class EngineResult:
    results: list[Any] = field(default_factory=list)
    errors: list[ChunkOutcome] = field(default_factory=list)
    delivered: int = 0
    cancelled: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def raise_first(self) -> None:
        if self.errors:
            raise self.errors[0].error


class _ReorderBuffer:
    """
    Holds completed outcomes until every lower chunk index has been emitted.
    Only the collector touches it; workers hand results over the channel.
    """

    def __init__(self) -> None:
        self._pending: dict[int, ChunkOutcome] = {}
        self._next = 0

    @property
    def next_index(self) -> int:
        return self._next

    def push(self, outcome: ChunkOutcome) -> list[ChunkOutcome]:
        if outcome.index < self._next or outcome.index in self._pending:
            raise RuntimeError(f"chunk {outcome.index} delivered twice")
        self._pending[outcome.index] = outcome
        ready = []
        while self._next in self._pending:
            ready.append(self._pending.pop(self._next))
            self._next += 1
        return ready

    def __len__(self) -> int:
        return len(self._pending)


# =========================
# Worker side
# =========================

def materialize(chunk: Chunk) -> list[Record]:
    """Default callback: the chunk's records as owned Record objects."""
    return list(chunk.records(borrow=False))


def _decode_span(
    data: Union[bytes, memoryview],
    offset: int,
    index: int,
    header: FileHeader,
    callback: Callable[[Chunk], Any],
    zero_copy: bool,
) -> Any:
    # data covers exactly this chunk's byte range; nothing else is shared
    chunk = chunk_codec.decode(ByteCursor(data, base=offset), header, index=index, zero_copy=zero_copy)
    try:
        return callback(chunk)
    except RadError:
        raise
    except Exception as exc:
        raise ChunkCallbackError(
            f"callback failed: {type(exc).__name__}: {exc}", chunk_index=index, offset=offset,
        ) from exc


def _forward(channel: "queue.Queue", span: ChunkSpan, fut: Future) -> None:
    # runs on whichever thread completed the future; the channel is the only hand-off
    if fut.cancelled():
        return
    channel.put((span, fut.result() if fut.exception() is None else None, fut.exception()))


def _attribute(exc: BaseException, span: ChunkSpan) -> RadError:
    if isinstance(exc, RadError):
        return exc.with_context(chunk_index=span.index)
    # pool-level failures (unpicklable callback, broken worker process)
    err = ChunkCallbackError(
        f"{type(exc).__name__}: {exc}", chunk_index=span.index, offset=span.offset,
    )
    err.__cause__ = exc
    return err

# =========================
# Engine
# =========================

class ParallelDecodeEngine:
    """
    Chunk-parallel decoder.

    The calling thread scans chunk frames to find boundaries (no record is
    decoded there) and keeps at most `max_pending` chunks dispatched or
    waiting for reorder. Each worker decodes its own chunk range and runs the
    callback on the Chunk. Completed results come back over one channel and
    are re-sequenced by chunk index when `ordered` is set, or handed out in
    completion order otherwise.

        engine = ParallelDecodeEngine(workers=4)
        for outcome in engine.imap("reads.rad", count_records):
            ...

    cancel() stops dispatching; in-flight chunks then finish or are abandoned
    according to `on_cancel`. Abandoned chunks are never delivered.
    """

    def __init__(self, options: Optional[EngineOptions] = None, **overrides: Any) -> None:
        if options is None:
            options = EngineOptions(**overrides)
        elif overrides:
            options = replace(options, **overrides)
        self.options = options
        self._cancel = threading.Event()

    # ---- cancellation ----

    def cancel(self) -> None:
        """Request cancellation of the run in progress (safe from any thread)."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- plumbing ----

    def _make_pool(self) -> Executor:
        if self.options.backend == "process":
            return ProcessPoolExecutor(max_workers=self.options.workers)
        return ThreadPoolExecutor(max_workers=self.options.workers, thread_name_prefix="rad-decode")

    def _deliver(self, outcome: ChunkOutcome, reorder: _ReorderBuffer) -> list[ChunkOutcome]:
        if not outcome.ok and self.options.error_policy is ErrorPolicy.FAIL_FAST:
            raise outcome.error
        if self.options.ordered:
            return reorder.push(outcome)
        return [outcome]

    def _run(
        self,
        src: ByteSource,
        header: FileHeader,
        spans: Iterator[ChunkSpan],
        callback: Callable[[Chunk], Any],
    ) -> Iterator[ChunkOutcome]:
        opts = self.options
        channel: queue.Queue = queue.Queue()
        reorder = _ReorderBuffer()
        pool = self._make_pool()
        in_flight = 0
        dispatched = 0
        scan_done = False
        abandon = False
        try:
            while True:
                while not scan_done and not self._cancel.is_set() and in_flight + len(reorder) < opts.max_pending:
                    try:
                        span = next(spans)
                    except StopIteration:
                        scan_done = True
                        break
                    except RadError as exc:
                        # an unreadable frame hides every later boundary
                        scan_done = True
                        failed = ChunkOutcome(exc.chunk_index, exc.offset or 0, error=exc)
                        yield from self._deliver(failed, reorder)
                        break
                    data = src.view(span.offset, span.length)
                    if opts.backend == "process":
                        data = bytes(data)
                    fut = pool.submit(_decode_span, data, span.offset, span.index, header, callback, opts.zero_copy)
                    fut.add_done_callback(partial(_forward, channel, span))
                    in_flight += 1
                    dispatched += 1
                    logger.debug("dispatched chunk %d (offset %d, %d record(s))",
                                 span.index, span.offset, span.record_count)

                if in_flight == 0:
                    break
                if self._cancel.is_set() and opts.on_cancel is CancelPolicy.ABANDON:
                    abandon = True
                    break

                span, value, exc = channel.get()
                in_flight -= 1
                outcome = ChunkOutcome(
                    span.index, span.offset,
                    value=value,
                    error=None if exc is None else _attribute(exc, span),
                    record_count=span.record_count,
                )
                logger.debug("chunk %d %s", span.index, "done" if outcome.ok else f"failed: {outcome.error}")
                yield from self._deliver(outcome, reorder)
        finally:
            pool.shutdown(wait=not abandon, cancel_futures=True)
            if self._cancel.is_set():
                logger.warning("decode cancelled after dispatching %d chunk(s); %d in flight %s",
                               dispatched, in_flight, "abandoned" if abandon else "finished")

    # ---- public API ----

    def imap(self, source: Source, callback: Callable[[Chunk], Any] = materialize) -> Iterator[ChunkOutcome]:
        """
        Yield one ChunkOutcome per chunk, in chunk order when `ordered`,
        otherwise as chunks complete. Under FAIL_FAST the first failure is
        raised (with its chunk index); under COLLECT it is yielded.
        """
        self._cancel.clear()
        src = ByteSource.open(source)
        try:
            cur = src.cursor()
            header = header_codec.read(cur)
            spans = iter_spans(src, header, cur.offset)
            yield from self._run(src, header, spans, callback)
        finally:
            if src is not source:
                src.close()

    def process(
        self,
        source: Source,
        callback: Callable[[Chunk], Any] = materialize,
        sink: Optional[Callable[[ChunkOutcome], Any]] = None,
    ) -> EngineResult:
        """
        Run a whole stream. Successful values go to `sink` when given, else
        into EngineResult.results (delivery order). Under FAIL_FAST the first
        chunk error is raised instead of returned.
        """
        result = EngineResult()
        t0 = time.perf_counter()
        for outcome in self.imap(source, callback):
            if not outcome.ok:
                result.errors.append(outcome)
                continue
            result.delivered += 1
            if sink is None:
                result.results.append(outcome.value)
            else:
                sink(outcome)
        result.cancelled = self._cancel.is_set()
        result.elapsed = time.perf_counter() - t0
        logger.info(
            "decoded %d chunk(s) with %d %s worker(s) in %.3fs (%d error(s)%s)",
            result.delivered, self.options.workers, self.options.backend, result.elapsed,
            len(result.errors), ", cancelled" if result.cancelled else "",
        )
        return result

    def iter_records(self, source: Source) -> Iterator[Record]:
        """
        Every record of the stream, flattened; record order follows `ordered`.
        A failed chunk is raised when it is reached, whatever the error policy.
        """
        for outcome in self.imap(source, materialize):
            if not outcome.ok:
                raise outcome.error
            yield from outcome.value


def process(
    source: Source,
    callback: Callable[[Chunk], Any] = materialize,
    workers: int = 1,
    **options: Any,
) -> EngineResult:
    """One-shot ParallelDecodeEngine(workers=..., **options).process(source, callback)."""
    return ParallelDecodeEngine(workers=workers, **options).process(source, callback)
