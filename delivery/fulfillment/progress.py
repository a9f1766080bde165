# delivery/fulfillment/progress.py
"""
Progress log for a single goal execution.

Collects output lines from executors and containers and mirrors each
line to the goal logger. Optionally tees into a file.
"""

import threading
from typing import List, Optional, TextIO

from ..logging import get_goal_logger


class ProgressLog:
    """
    Line oriented execution log.

    Example:
        log = ProgressLog("build", goal_set_id="61d3...")
        log.write("Compiling")
        log.close()
    """

    def __init__(self, name: str, goal_set_id: Optional[str] = None, path: Optional[str] = None):
        self.name = name
        self.goal_set_id = goal_set_id
        self.path = path
        self._lines: List[str] = []
        self._lock = threading.Lock()
        self._logger = get_goal_logger(name, goal_set_id)
        self._file: Optional[TextIO] = open(path, "a", encoding="utf-8") if path else None
        self.closed = False

    def write(self, text: str) -> None:
        """Append text; multi-line text is split into lines."""
        for line in text.splitlines() or [""]:
            with self._lock:
                self._lines.append(line)
                if self._file is not None:
                    self._file.write(line + "\n")
            self._logger.debug("progress", line=line)

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    @property
    def log(self) -> str:
        return "\n".join(self.lines)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.flush()

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
            self.closed = True
