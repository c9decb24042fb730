"""Background conversion/summarization tasks polled over HTTP.

A task is created ``pending``, switched to ``processing`` when its background
coroutine starts, and ends exactly once in ``completed`` or ``failed``. Only
the task's own coroutine mutates it, under a per-task lock; pollers receive
immutable snapshots. Finished tasks are evicted ``retention_seconds`` after
their terminal transition whether or not anyone polled them.
"""
import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from doc2md import config
from doc2md.conversion.ai_client import AIConversionClient, strip_fences
from doc2md.conversion.models import SourceFile, TaskKind, TaskStatus
from doc2md.conversion.pipeline import FilePreparer, PrepareProgress
from doc2md.errors import Doc2MDError, InvalidInput, TaskNotFound
from doc2md.scheduler import Scheduler, TimerHandle
from doc2md.upload_cache import UploadCache

logger = logging.getLogger("doc2md.tasks")

# Percent windows of the overall progress bar
STARTED_PERCENT = 5
READ_WINDOW = (5, 10)
PREPARE_WINDOW = (10, 30)
STREAM_WINDOW = (30, 95)

EXPECTED_CHARS_PER_FILE = 6000
MIN_EXPECTED_CHARS = 500


@dataclass(frozen=True)
class TaskSnapshot:
    id: str
    kind: TaskKind
    status: TaskStatus
    result: str
    progress: int
    model: str
    created_at: float
    eta: Optional[float] = None
    throughput: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    finished_at: Optional[float] = None
    files: tuple[str, ...] = ()
    input_bytes: int = 0
    session_id: Optional[str] = None

    def to_dict(self, result_key: str = "result") -> dict:
        out = {
            "task_id": self.id,
            "status": self.status.value,
            result_key: self.result,
            "progress": self.progress,
            "model": self.model,
        }
        if self.status == TaskStatus.PROCESSING:
            if self.eta is not None:
                out["eta"] = round(self.eta)
            if self.throughput is not None:
                out["throughput"] = round(self.throughput, 1)
        if self.status == TaskStatus.FAILED:
            out["error"] = self.error
            out["code"] = self.error_code
        return out


@dataclass
class Task:
    id: str
    kind: TaskKind
    model: str
    created_at: float
    status: TaskStatus = TaskStatus.PENDING
    result: str = ""
    progress: int = 0
    eta: Optional[float] = None
    throughput: Optional[float] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    finished_at: Optional[float] = None
    files: list[str] = field(default_factory=list)
    input_bytes: int = 0
    session_id: Optional[str] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def mark_processing(self) -> None:
        with self._lock:
            self.status = TaskStatus.PROCESSING
            self.set_progress(STARTED_PERCENT)

    def set_progress(self, value: float, eta: Optional[float] = None, throughput: Optional[float] = None) -> None:
        """Raise progress; never lowers it and never reaches 100 before completion."""
        with self._lock:
            if self.status != TaskStatus.PROCESSING:
                return
            value = int(min(99, max(0, value)))
            if value > self.progress:
                self.progress = value
            self.eta = eta
            if throughput is not None:
                self.throughput = throughput

    def append(self, fragment: str) -> None:
        with self._lock:
            if self.status == TaskStatus.PROCESSING:
                self.result += fragment

    # Status is assigned last so a terminal status always comes with its final fields.
    def complete(self, result: str, now: float) -> None:
        with self._lock:
            self.result = result
            self.progress = 100
            self.eta = None
            self.throughput = None
            self.finished_at = now
            self.status = TaskStatus.COMPLETED

    def fail(self, message: str, code: Optional[str], now: float) -> None:
        with self._lock:
            self.error = message
            self.error_code = code
            self.eta = None
            self.throughput = None
            self.finished_at = now
            self.status = TaskStatus.FAILED

    def snapshot(self) -> TaskSnapshot:
        with self._lock:
            return TaskSnapshot(
                id=self.id,
                kind=self.kind,
                status=self.status,
                result=self.result,
                progress=self.progress,
                model=self.model,
                created_at=self.created_at,
                eta=self.eta,
                throughput=self.throughput,
                error=self.error,
                error_code=self.error_code,
                finished_at=self.finished_at,
                files=tuple(self.files),
                input_bytes=self.input_bytes,
                session_id=self.session_id,
            )


def window(bounds: tuple[int, int], fraction: float) -> float:
    low, high = bounds
    return low + (high - low) * max(0.0, min(1.0, fraction))


class StreamProgressEstimator:
    """Maps an open-ended text stream onto a progress window.

    Throughput (chars/second) is recomputed at most once per ``interval``. The
    expected total grows with the stream so the bar slows down instead of
    hitting the top of the window.
    """

    def __init__(
        self,
        bounds: tuple[int, int],
        expected_chars: int,
        clock: Callable[[], float] = time.monotonic,
        interval: float = 1.0,
    ):
        self.bounds = bounds
        self.expected_chars = max(1, expected_chars)
        self._clock = clock
        self._interval = interval
        self._started = clock()
        self._last_update: Optional[float] = None

    def observe(self, chars_seen: int) -> Optional[tuple[float, Optional[float], Optional[float]]]:
        """Return ``(percent, eta, throughput)`` when an update is due, else ``None``."""
        now = self._clock()
        if self._last_update is not None and now - self._last_update < self._interval:
            return None
        self._last_update = now
        elapsed = now - self._started
        throughput = chars_seen / elapsed if elapsed > 0 else None
        estimated_total = max(self.expected_chars, chars_seen * 1.25)
        percent = window(self.bounds, chars_seen / estimated_total)
        eta = (estimated_total - chars_seen) / throughput if throughput else None
        return percent, eta, throughput


class TaskRunner:
    """The work a task performs: read staged files, prepare them, stream the AI response."""

    def __init__(
        self,
        cache: UploadCache,
        preparer: FilePreparer,
        ai: AIConversionClient,
        clock: Callable[[], float] = time.monotonic,
        stream_interval: float = 1.0,
    ):
        self.cache = cache
        self.preparer = preparer
        self.ai = ai
        self.clock = clock
        self.stream_interval = stream_interval

    @property
    def default_model(self) -> str:
        return self.ai.default_model

    async def run_conversion(self, task: Task, entry_ids: list[str]) -> str:
        sources: list[SourceFile] = []
        for i, entry_id in enumerate(entry_ids):
            entry = self.cache.entry(entry_id)
            data = await asyncio.to_thread(self.cache.get, entry_id)
            sources.append(SourceFile(data=data, media_type=entry.metadata.media_type, name=entry.metadata.filename))
            task.files.append(entry.metadata.filename)
            task.input_bytes += len(data)
            task.set_progress(window(READ_WINDOW, (i + 1) / len(entry_ids)))

        def on_prepare(update: PrepareProgress) -> None:
            task.set_progress(window(PREPARE_WINDOW, update.overall), eta=update.eta)

        prepared = await self.preparer.prepare(sources, on_prepare)
        task.set_progress(PREPARE_WINDOW[1])
        logger.info("Task %s: %s file(s) prepared, streaming from model %s", task.id, len(prepared), task.model)

        expected = EXPECTED_CHARS_PER_FILE * len(prepared)
        return await self._stream_into(task, self.ai.stream_convert(prepared, task.model), expected)

    async def run_summary(self, task: Task, text: str) -> str:
        task.input_bytes = len(text.encode("utf-8"))
        task.set_progress(PREPARE_WINDOW[1])
        expected = max(MIN_EXPECTED_CHARS, len(text) // 4)
        return await self._stream_into(task, self.ai.stream_summarize(text, task.model), expected)

    async def _stream_into(self, task: Task, fragments: AsyncIterator[str], expected_chars: int) -> str:
        estimator = StreamProgressEstimator(STREAM_WINDOW, expected_chars, self.clock, self.stream_interval)
        parts: list[str] = []
        async for fragment in fragments:
            parts.append(fragment)
            task.append(fragment)
            update = estimator.observe(len(task.result))
            if update is not None:
                percent, eta, throughput = update
                task.set_progress(percent, eta=eta, throughput=throughput)
        return strip_fences("".join(parts))


FinishedHook = Callable[[TaskSnapshot], None]


class TaskStore:
    """Registry of in-flight and recently finished tasks."""

    def __init__(
        self,
        runner: TaskRunner,
        scheduler: Scheduler,
        retention_seconds: float = config.TASK_RETENTION_SECONDS,
        max_files: int = config.MAX_FILES_PER_TASK,
        max_summary_chars: int = config.MAX_SUMMARY_CHARS,
        on_finished: Optional[FinishedHook] = None,
    ):
        self.runner = runner
        self.scheduler = scheduler
        self.retention_seconds = retention_seconds
        self.max_files = max_files
        self.max_summary_chars = max_summary_chars
        self.on_finished = on_finished
        self._tasks: dict[str, Task] = {}
        self._running: dict[str, asyncio.Task] = {}
        self._evictions: dict[str, TimerHandle] = {}
        self._lock = threading.Lock()

    def start_conversion(self, entry_ids: list[str], model: Optional[str] = None, session_id: Optional[str] = None) -> str:
        entry_ids = [e for e in (entry_ids or []) if e]
        if not entry_ids:
            raise InvalidInput("File list is empty")
        if len(entry_ids) > self.max_files:
            raise InvalidInput(f"Too many files (max {self.max_files})")
        task = self._create(TaskKind.CONVERT, model, session_id)
        logger.info("Task started: %s (%s file(s), model=%s)", task.id, len(entry_ids), task.model)
        self._launch(task, lambda: self.runner.run_conversion(task, entry_ids))
        return task.id

    def start_summary(self, text: str, model: Optional[str] = None, session_id: Optional[str] = None) -> str:
        if not text or not text.strip():
            raise InvalidInput("Text must not be empty")
        if len(text) > self.max_summary_chars:
            raise InvalidInput(f"Text too long (max {self.max_summary_chars} characters)")
        task = self._create(TaskKind.SUMMARIZE, model, session_id)
        logger.info("Summary task started: %s (model=%s)", task.id, task.model)
        self._launch(task, lambda: self.runner.run_summary(task, text))
        return task.id

    def poll(self, task_id: str) -> TaskSnapshot:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task.snapshot()

    async def wait(self, task_id: str) -> TaskSnapshot:
        """Wait for the background run of ``task_id`` to finish and return its final snapshot."""
        with self._lock:
            running = self._running.get(task_id)
        if running is not None:
            await asyncio.shield(running)
        return self.poll(task_id)

    async def shutdown(self) -> None:
        with self._lock:
            running = list(self._running.values())
        for job in running:
            job.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        # A run cancelled before its first step never reaches _run's cleanup
        with self._lock:
            unstarted = [self._tasks[task_id] for task_id in self._running if task_id in self._tasks]
            self._running.clear()
        for task in unstarted:
            if not task.status.is_terminal:
                task.fail("Task cancelled", "cancelled", time.time())
                self._notify(task.snapshot())
        # Cancelled runs register their eviction on the way out
        with self._lock:
            evictions = list(self._evictions.values())
            self._evictions.clear()
        for handle in evictions:
            handle.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def _create(self, kind: TaskKind, model: Optional[str], session_id: Optional[str]) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            kind=kind,
            model=model or self.runner.default_model,
            created_at=time.time(),
            session_id=session_id,
        )
        with self._lock:
            self._tasks[task.id] = task
        return task

    def _launch(self, task: Task, job: Callable[[], Awaitable[str]]) -> None:
        running = asyncio.get_running_loop().create_task(self._run(task, job), name=f"doc2md-task-{task.id}")
        with self._lock:
            self._running[task.id] = running

    async def _run(self, task: Task, job: Callable[[], Awaitable[str]]) -> None:
        task.mark_processing()
        try:
            result = await job()
            task.complete(result, time.time())
            logger.info("Task completed: %s (%s chars)", task.id, len(result))
        except asyncio.CancelledError:
            task.fail("Task cancelled", "cancelled", time.time())
            raise
        except Doc2MDError as e:
            logger.warning("Task failed: %s: %s", task.id, e.message)
            task.fail(e.message, e.code, time.time())
        except Exception as e:
            logger.exception("Task failed: %s", task.id)
            task.fail(str(e) or e.__class__.__name__, "internal_error", time.time())
        finally:
            with self._lock:
                self._running.pop(task.id, None)
                if task.id in self._tasks:
                    self._evictions[task.id] = self.scheduler.call_later(
                        self.retention_seconds, lambda: self._evict(task.id)
                    )
            self._notify(task.snapshot())

    def _evict(self, task_id: str) -> None:
        with self._lock:
            self._evictions.pop(task_id, None)
            removed = self._tasks.pop(task_id, None)
        if removed is not None:
            logger.info("Task evicted: %s (%s)", task_id, removed.status.value)

    def _notify(self, snapshot: TaskSnapshot) -> None:
        if self.on_finished is None:
            return
        try:
            self.on_finished(snapshot)
        except Exception:
            logger.exception("Finished-task hook failed for %s", snapshot.id)
