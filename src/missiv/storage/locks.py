"""Summary: Reader/writer lock guarding the in-memory store.

Importance: Lets reads run in parallel while every write is exclusive.
Alternatives: Use a single threading.Lock for reads and writes alike.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ReadWriteLock:
    """Summary: Writer-preferring shared/exclusive lock.

    Importance: Waiting writers block new readers so writes are never starved.
    Alternatives: Reader-preferring lock with simpler bookkeeping.

    Not reentrant: a thread holding the write side must not ask for either side again.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        """Summary: Hold the shared side for the duration of the block."""

        with self._condition:
            while self._writer or self._waiting_writers:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Summary: Hold the exclusive side for the duration of the block."""

        with self._condition:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._condition:
                self._writer = False
                self._condition.notify_all()
