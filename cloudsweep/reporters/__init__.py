"""
Report Generators
=================

Output formatters for audit runs.

Available Reporters
-------------------
TableReporter
    Rich terminal output with formatted tables.
JSONReporter
    Lossless JSON export, read back with :func:`parse_run`.
SummaryReporter
    Plain-text counts for logs and CI output.
RunHistory
    Append-only JSON-lines history of runs.

Example
-------
>>> from cloudsweep.reporters import render
>>>
>>> print(render(run, "summary"))
>>> text = render(run, "json")
"""

from typing import Union

from cloudsweep.core.models import AuditRun, OutputFormat
from cloudsweep.reporters.history import RunHistory
from cloudsweep.reporters.json_reporter import JSONReporter, parse_run
from cloudsweep.reporters.summary_reporter import SummaryReporter
from cloudsweep.reporters.table_reporter import TableReporter


def render(run: AuditRun, format: Union[OutputFormat, str] = OutputFormat.TABLE) -> str:
    """
    Render ``run`` as a string in ``format`` (table, json or summary).

    Raises
    ------
    ValueError
        If the format is unknown.
    """
    output_format = OutputFormat.parse(format)
    if output_format is OutputFormat.JSON:
        return JSONReporter().to_string(run)
    if output_format is OutputFormat.SUMMARY:
        return SummaryReporter().to_string(run)
    return TableReporter().to_string(run)


__all__ = [
    "JSONReporter",
    "RunHistory",
    "SummaryReporter",
    "TableReporter",
    "parse_run",
    "render",
]
