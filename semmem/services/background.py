"""
Background execution for extraction and graph work, and the embedding-stored hook.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from ..models.core import EmbeddingStoredEvent
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Thread pool for work that must not delay the request that triggered it."""

    def __init__(self, max_workers: int = 4, name: str = 'semmem-bg'):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending: List[Future] = []
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Schedule fn; exceptions are logged, never raised to the caller."""

        def _run():
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                logger.error(f'Background task {getattr(fn, "__name__", fn)} failed: {e}')
                return None

        future = self._executor.submit(_run)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every task scheduled so far (and any it scheduled) has finished."""
        while True:
            with self._lock:
                pending = [f for f in self._pending if not f.done()]
            if not pending:
                return
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_tasks)


class InlineTasks:
    """Runs tasks immediately on the calling thread (scripts and tests)."""

    def submit(self, fn: Callable, *args, **kwargs) -> Optional[Future]:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            logger.error(f'Inline task {getattr(fn, "__name__", fn)} failed: {e}')
            future.set_result(None)
        return future

    def join(self, timeout: Optional[float] = None) -> None:
        return None

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        return None


class EmbeddingHooks:
    """Fan-out of embedding-stored events to subscribers, off the request path."""

    def __init__(self, tasks):
        self.tasks = tasks
        self._subscribers: Dict[str, List[Callable[[EmbeddingStoredEvent], object]]] = {}

    def subscribe(self, node_kind: str, handler: Callable[[EmbeddingStoredEvent], object]) -> None:
        self._subscribers.setdefault(node_kind, []).append(handler)
        logger.debug(f'Subscribed {getattr(handler, "__name__", handler)} to {node_kind} embeddings')

    def emit(self, event: EmbeddingStoredEvent) -> List[Future]:
        """Dispatch an event to every subscriber of its node kind in the background."""
        futures = []
        for handler in self._subscribers.get(event.node_kind, []):
            futures.append(self.tasks.submit(handler, event))
        return futures
