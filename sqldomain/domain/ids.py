"""Timestamp based id generation for domain objects."""
import random
import threading
import time


class IdGenerator:
    """
    Generates ids of the form ``<milliseconds><3 digit counter><3 random digits>``.

    Ids generated later are (almost always) larger, so sorting by id orders objects by
    creation time. Different processes generating ids in the same millisecond are
    separated by the random part. Uniqueness within one store is still checked by the
    caller.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_millis = 0
        self._counter = 0

    def next_id(self) -> int:
        with self._lock:
            millis = int(time.time() * 1000)
            if millis != self._last_millis:
                self._last_millis = millis
                self._counter = random.randrange(100) * 10
            else:
                self._counter += 1
            return millis * 1_000_000 + (self._counter % 1000) * 1000 + random.randrange(1000)
