from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable, Optional, Set

from kubeplane.errors import ErrorHandler, LoggingErrorHandler
from kubeplane.logger import logger as default_logger

PanicCallback = Callable[[BaseException], None]


class WorkerPool:
    """
    Runs fire-and-forget units of work on a thread pool.

    Every unit runs behind a panic boundary: an exception escaping the unit
    is reported to the error handler and handed to the unit's ``on_panic``
    callback instead of disappearing inside an unobserved future.
    """

    def __init__(
        self,
        max_workers: int = 8,
        logger: Optional[logging.Logger] = None,
        error_handler: Optional[ErrorHandler] = None,
    ) -> None:
        self._logger = logger or default_logger
        self._error_handler = error_handler or LoggingErrorHandler(self._logger)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kubeplane-worker"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def _guard(
        self,
        name: str,
        fn: Callable[..., Any],
        on_panic: Optional[PanicCallback],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            self._logger.error(f"Unit of work {name} crashed: {e}")
            self._error_handler.handle(e)
            if on_panic is not None:
                try:
                    on_panic(e)
                except Exception as callback_error:
                    self._error_handler.handle(callback_error)
            return None

    def submit(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        on_panic: Optional[PanicCallback] = None,
        **kwargs: Any,
    ) -> Future:
        """
        Schedule ``fn(*args, **kwargs)``.

        Args:
            name (str): A label used in logs.
            fn (Callable): The unit of work.
            on_panic (Optional[PanicCallback]): Called with the exception if the unit crashes.

        Returns:
            Future: Resolves to the unit's result, or None if it crashed.
        """
        self._logger.debug(f"Submitting {name}")
        future = self._executor.submit(self._guard, name, fn, on_panic, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no unit of work is pending, including units submitted by
        other units while waiting.

        Returns:
            bool: False if the timeout expired first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_futures(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
