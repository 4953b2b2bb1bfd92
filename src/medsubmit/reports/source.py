"""Access to finalized reports produced by the report-authoring workflow."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

from medsubmit.models.report import FinalizedReport
from medsubmit.utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


class ReportSource(ABC):
    """Read-only lookup of finalized reports."""

    @abstractmethod
    def get_reports(self, report_ids: Sequence[str]) -> List[FinalizedReport]:
        """Return the reports in the order of ``report_ids``.

        Raises:
            ValidationError: If any report is unknown
        """

    @staticmethod
    def _ordered(index: Dict[str, FinalizedReport], report_ids: Sequence[str]) -> List[FinalizedReport]:
        missing = [report_id for report_id in report_ids if report_id not in index]
        if missing:
            raise ValidationError(f"Unknown finalized reports: {', '.join(missing)}")
        return [index[report_id] for report_id in report_ids]


class InMemoryReportSource(ReportSource):
    def __init__(self, reports: Iterable[FinalizedReport] = ()) -> None:
        self._reports: Dict[str, FinalizedReport] = {}
        for report in reports:
            self.add(report)

    def add(self, report: FinalizedReport) -> None:
        if not report.id:
            raise ValidationError("Finalized report has no id")
        self._reports[report.id] = report

    def get_reports(self, report_ids: Sequence[str]) -> List[FinalizedReport]:
        return self._ordered(self._reports, report_ids)


class JsonReportSource(ReportSource):
    """Reads finalized reports from a JSON file.

    The file holds either a list of reports or ``{"reports": [...]}``. It is
    re-read on every lookup so reports finalized after startup are visible.

    Args:
        path: Path of the JSON file
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> List[FinalizedReport]:
        """Parse every report in the file.

        Raises:
            ValidationError: If the file is missing or malformed
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ValidationError(f"Report file not found: {self.path}") from e
        except json.JSONDecodeError as e:
            raise ValidationError(
                f"Invalid JSON in report file {self.path} at line {e.lineno}, column {e.colno}"
            ) from e

        if isinstance(data, dict):
            data = data.get("reports")
        if not isinstance(data, list):
            raise ValidationError(f"Report file {self.path} must contain a list of reports")

        reports = []
        for index, entry in enumerate(data):
            if not isinstance(entry, dict):
                raise ValidationError(f"Report #{index} in {self.path} is not an object")
            try:
                reports.append(FinalizedReport.from_dict(entry))
            except (AttributeError, TypeError, ValueError) as e:
                raise ValidationError(f"Report #{index} in {self.path} is malformed: {e}") from e

        logger.debug(f"Loaded {len(reports)} finalized reports from {self.path}")
        return reports

    def get_reports(self, report_ids: Sequence[str]) -> List[FinalizedReport]:
        index = {report.id: report for report in self.load() if report.id}
        return self._ordered(index, report_ids)
