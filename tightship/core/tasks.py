"""
Detached task runners.

Side effects that must never block or fail the request that triggered them
(usage tracking, audit events) are submitted here by name. Every runner logs
task failures under "tightship.tasks" and swallows them.

- ThreadTaskRunner: in-process ThreadPoolExecutor (default)
- RqTaskRunner: enqueues onto Redis/RQ; jobs live in tightship.workers.usage_jobs
- InlineTaskRunner: runs immediately on the caller's thread (tests)
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol

from tightship.core.config import settings

logger = logging.getLogger("tightship.tasks")

RQ_JOBS_MODULE = "tightship.workers.usage_jobs"


class TaskRunner(Protocol):
    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ...

    def shutdown(self, wait: bool = True) -> None:
        ...


def run_detached(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Run fn, logging instead of raising on failure."""
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        logger.error(
            "[tasks] detached task failed",
            extra={"task": name, "error": str(exc), "error_type": type(exc).__name__},
        )


class InlineTaskRunner:
    def __init__(self):
        self.submitted = []

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.submitted.append(name)
        run_detached(name, fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        return None


class ThreadTaskRunner:
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tightship-task")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            self._executor.submit(run_detached, name, fn, *args, **kwargs)
        except RuntimeError as exc:
            # Executor already shut down
            logger.warning("[tasks] task dropped", extra={"task": name, "error": str(exc)})

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class RqTaskRunner:
    """
    Enqueue tasks onto an RQ queue.

    The task name selects the job function in RQ_JOBS_MODULE; `fn` is only
    used for the local log line since bound service methods cannot cross the
    queue.
    """

    def __init__(self, redis_url: str, queue_name: str = "usage"):
        from redis import Redis
        from rq import Queue

        self._queue = Queue(queue_name, connection=Redis.from_url(redis_url))

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            job = self._queue.enqueue(f"{RQ_JOBS_MODULE}.{name}", *args, **kwargs)
            logger.debug("[tasks] enqueued", extra={"task": name, "job_id": job.id})
        except Exception as exc:
            logger.error(
                "[tasks] enqueue failed",
                extra={"task": name, "error": str(exc), "error_type": type(exc).__name__},
            )

    def shutdown(self, wait: bool = True) -> None:
        return None


_runner: Optional[TaskRunner] = None


def build_task_runner(backend: Optional[str] = None) -> TaskRunner:
    backend = (backend or settings.TASK_BACKEND or "thread").lower()
    if backend == "inline":
        return InlineTaskRunner()
    if backend == "rq":
        if not settings.REDIS_URL:
            raise ValueError("REDIS_URL is required when TASK_BACKEND=rq")
        return RqTaskRunner(settings.REDIS_URL, queue_name=settings.TASK_QUEUE_NAME)
    if backend == "thread":
        return ThreadTaskRunner(max_workers=settings.TASK_MAX_WORKERS)
    raise ValueError(f"Unknown TASK_BACKEND: {backend}")


def get_task_runner() -> TaskRunner:
    global _runner
    if _runner is None:
        _runner = build_task_runner()
    return _runner


def shutdown_task_runner(wait: bool = True) -> None:
    global _runner
    if _runner is not None:
        _runner.shutdown(wait=wait)
        _runner = None
