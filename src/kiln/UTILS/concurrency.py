"""
Small thread coordination primitives.
"""
import threading
from concurrent.futures import ALL_COMPLETED, FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Callable, List


class ErrGroup:
    """
    Runs a handful of tasks on threads and re-raises the first error once all of them
    finished (or as soon as one failed when ``fail_fast`` is set).
    """
    def __init__(self, max_workers: int = 8, fail_fast: bool = False):
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self._futures: List[Future] = []
        self.fail_fast = fail_fast

    def go(self, fn: Callable, *args, **kwargs) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        self._futures.append(future)
        return future

    def wait(self) -> None:
        try:
            return_when = FIRST_EXCEPTION if self.fail_fast else ALL_COMPLETED
            done, _ = wait(self._futures, return_when=return_when)
            for future in self._futures:
                if future in done and future.exception() is not None:
                    raise future.exception()
        finally:
            self._executor.shutdown(wait=not self.fail_fast)

    def __enter__(self) -> "ErrGroup":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.wait()
        else:
            self._executor.shutdown(wait=False)


class ReadWriteLock:
    """
    Many concurrent readers or a single writer.
    """
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()
