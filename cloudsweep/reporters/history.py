"""
Run History
===========

Append-only JSON-lines log of audit runs, one run per line.

The engine only ever appends; :meth:`RunHistory.read_all` exists for
tooling and tests.

Example
-------
>>> history = RunHistory("~/.cloudsweep/history.jsonl")
>>> history.append(run)
>>> len(history.read_all())
1
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import List

from cloudsweep.core.models import AuditRun

# Module logger
logger = logging.getLogger(__name__)


class RunHistory:
    """
    JSON-lines history file.

    Parameters
    ----------
    path : str
        History file. Parent directories are created on first append.
    """

    _lock = threading.Lock()

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()

    def append(self, run: AuditRun) -> None:
        """
        Append one run.

        Raises
        ------
        OSError
            If the file can't be written.
        """
        line = json.dumps(run.to_dict(), separators=(",", ":"))
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        logger.debug("Appended run %s to %s", run.run_id, self.path)

    def read_all(self) -> List[AuditRun]:
        """Every run in the file, oldest first. Blank lines are ignored."""
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [AuditRun.from_dict(json.loads(line)) for line in f if line.strip()]

    def __repr__(self) -> str:
        """Return string representation."""
        return f"RunHistory(path='{self.path}')"
