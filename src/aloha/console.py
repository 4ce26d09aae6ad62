from __future__ import annotations

import logging
import sys
import threading
from typing import Optional, TextIO


class ConsoleWatcher:
    """Turns end-of-input on the operator's console into a stop request.

    A daemon thread drains the stream line by line and ignores what it reads;
    once the stream reports EOF (Ctrl-D, or Ctrl-Z then Enter on Windows) the
    ``stopped`` event is set. The thread does nothing else, so whoever polls
    ``is_set`` keeps sole ownership of its own state.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdin
        self.stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "ConsoleWatcher":
        self._thread = threading.Thread(target=self._watch, name="console-eof", daemon=True)
        self._thread.start()
        return self

    def is_set(self) -> bool:
        return self.stopped.is_set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _watch(self) -> None:
        try:
            for _ in iter(self.stream.readline, ""):
                pass
        except (OSError, ValueError) as exc:
            logging.warning("console read failed: %s", exc)
        logging.info("end of input on console; stopping")
        self.stopped.set()
