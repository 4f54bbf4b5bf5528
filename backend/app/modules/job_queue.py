"""Background job queue.

Known jobs:
  risk_recompute       region_id=…   (debounced per region)
  expire_occurrences   now=…         (optional)
  etl_import           source=…      (handler supplied by the import pipeline)

Two backends:
  inline  — run the handler synchronously in the caller's thread (dev, tests, CLI)
  thread  — ThreadPoolExecutor; handlers open their own DB session

A risk_recompute for a region that is already queued (not yet started) is
dropped: the queued run will see the newest occurrences anyway. Failing
handlers are retried with exponential backoff up to JOB_MAX_ATTEMPTS.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from app.config import settings

logger = logging.getLogger(__name__)

RISK_RECOMPUTE = "risk_recompute"
EXPIRE_OCCURRENCES = "expire_occurrences"
ETL_IMPORT = "etl_import"
JOB_NAMES = frozenset({RISK_RECOMPUTE, EXPIRE_OCCURRENCES, ETL_IMPORT})

Handler = Callable[..., Any]


def _debounce_key(name: str, payload: dict[str, Any]) -> str | None:
    if name == RISK_RECOMPUTE:
        return f"{name}:{payload.get('region_id')}"
    return None


class JobQueue:
    """Inline backend; subclasses override ``_submit`` to run elsewhere."""

    def __init__(self, max_attempts: int | None = None, retry_base_delay: float | None = None) -> None:
        self.handlers: dict[str, Handler] = {}
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.JOB_MAX_ATTEMPTS)
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.JOB_RETRY_BASE_DELAY
        )
        self._pending: set[str] = set()
        self._lock = threading.Lock()

    def register(self, name: str, handler: Handler) -> None:
        if name not in JOB_NAMES:
            raise ValueError(f"Unknown job '{name}'")
        self.handlers[name] = handler

    def enqueue(self, name: str, **payload: Any) -> bool:
        """Queue ``name``; False when dropped (debounced or no handler registered)."""
        if name not in JOB_NAMES:
            raise ValueError(f"Unknown job '{name}'")
        handler = self.handlers.get(name)
        if handler is None:
            logger.warning("No handler registered for job %s — dropping", name)
            return False
        key = _debounce_key(name, payload)
        if key is not None:
            with self._lock:
                if key in self._pending:
                    logger.debug("Job %s already queued — debounced", key)
                    return False
                self._pending.add(key)
        self._submit(name, handler, payload, key)
        return True

    def _submit(self, name: str, handler: Handler, payload: dict[str, Any], key: str | None) -> None:
        self._run(name, handler, payload, key)

    def _run(self, name: str, handler: Handler, payload: dict[str, Any], key: str | None) -> Any:
        # Released on start: an enqueue while the handler runs schedules a fresh run
        if key is not None:
            with self._lock:
                self._pending.discard(key)
        for attempt in range(1, self.max_attempts + 1):
            try:
                return handler(**payload)
            except Exception:
                if attempt >= self.max_attempts:
                    logger.exception(
                        "Job %s failed after %d attempts (payload=%s)", name, attempt, payload
                    )
                    return None
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Job %s failed (attempt %d/%d), retrying in %.1fs",
                    name, attempt, self.max_attempts, delay, exc_info=True,
                )
                time.sleep(delay)
        return None

    def pending(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def shutdown(self, wait: bool = True) -> None:
        pass


class ThreadPoolJobQueue(JobQueue):
    def __init__(
        self,
        max_workers: int = 4,
        max_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ) -> None:
        super().__init__(max_attempts=max_attempts, retry_base_delay=retry_base_delay)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="jobs")
        self.futures: list[Future] = []

    def _submit(self, name: str, handler: Handler, payload: dict[str, Any], key: str | None) -> None:
        future = self._executor.submit(self._run, name, handler, payload, key)
        self.futures = [f for f in self.futures if not f.done()] + [future]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _recompute_region(region_id: int) -> None:
    from app.database import SessionLocal
    from app.modules.risk_scoring import RiskIndexEngine

    db = SessionLocal()
    try:
        RiskIndexEngine(db).recalculate(region_id)
    finally:
        db.close()


def _expire(now=None) -> dict:
    from app.database import SessionLocal
    from app.modules.occurrence_lifecycle import expire_occurrences

    db = SessionLocal()
    try:
        return expire_occurrences(db, now=now)
    finally:
        db.close()


def create_job_queue(backend: str | None = None, max_workers: int | None = None) -> JobQueue:
    backend = (backend or settings.JOB_QUEUE_BACKEND).lower()
    if backend == "inline":
        queue = JobQueue()
    elif backend == "thread":
        queue = ThreadPoolJobQueue(max_workers or settings.JOB_QUEUE_WORKERS)
    else:
        raise ValueError(f"Unsupported JOB_QUEUE_BACKEND: {backend}")
    queue.register(RISK_RECOMPUTE, _recompute_region)
    queue.register(EXPIRE_OCCURRENCES, _expire)
    return queue


_queue: JobQueue | None = None
_queue_lock = threading.Lock()


def get_job_queue() -> JobQueue:
    global _queue
    with _queue_lock:
        if _queue is None:
            _queue = create_job_queue()
        return _queue
