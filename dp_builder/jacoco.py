"""
JaCoCo coverage reports (CSV format).

Columns: GROUP, PACKAGE, CLASS, INSTRUCTION_MISSED, INSTRUCTION_COVERED,
BRANCH_MISSED, BRANCH_COVERED, LINE_MISSED, LINE_COVERED, COMPLEXITY_MISSED,
COMPLEXITY_COVERED, METHOD_MISSED, METHOD_COVERED.
"""

import csv
import io
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JacocoClassCoverage:
    package_name: str
    class_name: str
    line_missed: int
    line_covered: int
    branch_missed: int
    branch_covered: int


@dataclass(frozen=True)
class JacocoResults:
    """Coverage of every class listed in one CSV file."""

    file_name: str
    classes: tuple[JacocoClassCoverage, ...] = field(default_factory=tuple)

    @property
    def lines_missed(self) -> int:
        return sum(c.line_missed for c in self.classes)

    @property
    def lines_covered(self) -> int:
        return sum(c.line_covered for c in self.classes)

    @property
    def branches_missed(self) -> int:
        return sum(c.branch_missed for c in self.classes)

    @property
    def branches_covered(self) -> int:
        return sum(c.branch_covered for c in self.classes)

    def line_coverage(self) -> int | None:
        """Percentage of covered lines, rounded down, or None if there are no lines."""
        total = self.lines_missed + self.lines_covered
        if total == 0:
            return None
        return self.lines_covered * 100 // total


class JacocoReportReader:
    """Parses JaCoCo CSV reports."""

    def read_csv(self, file_name: str, content: str) -> JacocoResults:
        """
        Parse one CSV report.

        Args:
            file_name: Name the report was stored under
            content: CSV text

        Returns:
            JacocoResults with one entry per class row

        Raises:
            ValueError: If a required column is missing or not a number
        """
        reader = csv.DictReader(io.StringIO(content))
        classes = []
        for row in reader:
            try:
                classes.append(
                    JacocoClassCoverage(
                        package_name=row["PACKAGE"],
                        class_name=row["CLASS"],
                        line_missed=int(row["LINE_MISSED"]),
                        line_covered=int(row["LINE_COVERED"]),
                        branch_missed=int(row["BRANCH_MISSED"]),
                        branch_covered=int(row["BRANCH_COVERED"]),
                    )
                )
            except (KeyError, TypeError) as e:
                raise ValueError(f"Malformed coverage report {file_name}: {e}") from e

        return JacocoResults(file_name=file_name, classes=tuple(classes))

    def read_reports(self, reports: list[tuple[str, str]]) -> list[JacocoResults]:
        """
        Parse (file name, content) pairs, skipping malformed ones.

        Args:
            reports: Pairs of file name and CSV text

        Returns:
            Parsed results
        """
        results = []
        for file_name, content in reports:
            try:
                results.append(self.read_csv(file_name, content))
            except ValueError as e:
                logger.warning(f"Ignoring coverage report: {e}")
        return results
