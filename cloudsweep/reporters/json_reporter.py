"""
JSON Reporter Module
====================

Serializes audit runs to JSON for programmatic access.

The output is the lossless form of :meth:`AuditRun.to_dict`, so
:func:`parse_run` rebuilds an equal run. Decimals are written as strings
and datetimes as ISO-8601.

Classes
-------
JSONReporter
    Reporter class for JSON export.

Example
-------
>>> from cloudsweep.reporters import JSONReporter, parse_run
>>>
>>> reporter = JSONReporter(output_path="audit.json")
>>> filepath = reporter.report(run)
>>>
>>> # Or get as string for API responses
>>> text = reporter.to_string(run)
>>> parse_run(text) == run
True

Output Structure
----------------
::

    {
      "run_id": "4f0c...",
      "provider": "aws",
      "mode": "dryRun",
      "started_at": "2024-01-15T10:30:00+00:00",
      "regions_scanned": ["us-east-1"],
      "findings": [...],
      "action_results": [...],
      "errors": [...],
      "summary": {"total_estimated_monthly_savings": "10.00", ...}
    }
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from cloudsweep.core.models import AuditRun

# Module logger
logger = logging.getLogger(__name__)


def parse_run(text: str) -> AuditRun:
    """Rebuild an :class:`AuditRun` from :class:`JSONReporter` output."""
    return AuditRun.from_dict(json.loads(text))


class JSONReporter:
    """
    Reporter for exporting audit runs to JSON.

    Parameters
    ----------
    output_path : str, optional
        Path for the output file. If not provided, a timestamped filename
        in the current directory is used.
    indent : int, default=2
        JSON indentation level. None for compact output.

    Examples
    --------
    >>> reporter = JSONReporter(indent=None)
    >>> line = reporter.to_string(run)
    """

    def __init__(
        self,
        output_path: Optional[str] = None,
        indent: Optional[int] = 2,
    ) -> None:
        """Initialize the JSON reporter with optional output path and indentation."""
        self.output_path = output_path
        self.indent = indent
        logger.debug("Initialized JSONReporter (output_path=%s)", output_path)

    def _get_output_path(self, run: AuditRun) -> Path:
        if self.output_path:
            return Path(self.output_path)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return Path(f"cloudsweep_{run.provider.value}_{timestamp}.json")

    def report(self, run: AuditRun) -> str:
        """
        Write the run to a JSON file.

        Returns
        -------
        str
            Path to the created file.
        """
        output_path = self._get_output_path(run)
        logger.info("Exporting %d finding(s) to %s", len(run.findings), output_path)

        with open(output_path, "w", encoding="utf-8") as f:
            f.write(self.to_string(run))
            f.write("\n")

        logger.info("JSON export complete: %s", output_path)
        return str(output_path)

    def to_string(self, run: AuditRun) -> str:
        """Convert the run to a JSON string without writing a file."""
        return json.dumps(self.to_dict(run), indent=self.indent)

    def to_dict(self, run: AuditRun) -> Dict[str, Any]:
        return run.to_dict()

    def __repr__(self) -> str:
        """Return string representation."""
        return f"JSONReporter(output_path={self.output_path!r}, indent={self.indent})"
