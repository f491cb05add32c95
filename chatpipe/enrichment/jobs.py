# chatpipe/enrichment/jobs.py

from concurrent.futures import Future, ThreadPoolExecutor
import threading
import time
from typing import Any, Callable, Optional

from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)


class BackgroundJobs:
    """
    Fire-and-forget runner for enrichment work.

    submit() returns immediately. A job's exception is logged with its
    traceback and swallowed: nothing a background job does can reach the
    turn that scheduled it. The returned Future resolves to None on failure.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enrich")
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        with self._lock:
            if self._closed:
                logger.warning("Background job %s dropped: runner is shut down.", name)
                return None
            return self._executor.submit(self._run, name, fn, *args, **kwargs)

    @staticmethod
    def _run(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        t0 = time.monotonic()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            logger.warning("Background job %s failed after %d ms.", name,
                           int((time.monotonic() - t0) * 1000), exc_info=True)
            return None
        logger.info("Background job %s finished in %d ms.", name, int((time.monotonic() - t0) * 1000))
        return result

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
