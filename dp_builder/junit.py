"""
Per-class test results (surefire / Gradle JUnit XML).

Each XML file describes one executed test class. Classes are classified as
teacher, hidden teacher or student tests by the prefix of their simple name.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dp_common.models import (
    TEACHER_HIDDEN_TEST_NAME_PREFIX,
    TEACHER_TEST_NAME_PREFIX,
    Assignment,
)

logger = logging.getLogger(__name__)

# Stack frames from these packages never help a student find their bug
_FRAMEWORK_FRAME_PREFIXES = (
    "at org.junit.",
    "at junit.",
    "at org.apache.maven.surefire.",
    "at org.gradle.",
    "at sun.reflect.",
    "at java.base/jdk.internal.reflect.",
    "at java.base/java.lang.reflect.",
    "at java.lang.reflect.",
    "at jdk.internal.reflect.",
)


class JUnitMethodResultType(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    ERROR = "Error"
    IGNORED = "Ignored"
    EMPTY = "Empty"  # Declared by the assignment but not found in the results


@dataclass(frozen=True)
class JUnitMethodResult:
    """Outcome of one test method."""

    method_name: str
    full_method_name: str  # "ClassName.methodName"
    type: JUnitMethodResultType
    failure_type: str | None = None  # Exception class
    failure_error_line: str | None = None  # Exception message
    failure_detail: str | None = None  # Stack trace

    @classmethod
    def empty(cls) -> "JUnitMethodResult":
        return cls(method_name="", full_method_name="", type=JUnitMethodResultType.EMPTY)

    @property
    def class_name(self) -> str:
        """Simple name of the declaring class."""
        return self.full_method_name.split(".", 1)[0] if "." in self.full_method_name else ""

    def filter_stacktrace(self, package_name: str) -> str:
        """
        Stack trace without framework frames and without the assignment's package prefix.

        Args:
            package_name: Assignment package, e.g. "org.dropproject.samples"

        Returns:
            Readable stack trace ("" when there is none)
        """
        if not self.failure_detail:
            return ""

        lines = [
            line
            for line in self.failure_detail.splitlines()
            if not line.strip().startswith(_FRAMEWORK_FRAME_PREFIXES)
        ]
        text = "\n".join(lines).strip()
        if package_name:
            text = text.replace(f"{package_name}.", "")
        return text

    def describe(self, package_name: str = "") -> str:
        """Header line plus filtered stack trace, as shown to the student."""
        header = f"{self.type.value.upper()}: {self.full_method_name}"
        detail = self.filter_stacktrace(package_name)
        return f"{header}\n{detail}" if detail else header


@dataclass(frozen=True)
class JUnitResults:
    """Results of one executed test class."""

    test_class_name: str  # Fully qualified
    num_tests: int
    num_errors: int
    num_failures: int
    num_skipped: int
    time_elapsed: float
    junit_method_results: tuple[JUnitMethodResult, ...] = field(default_factory=tuple)

    @property
    def simple_class_name(self) -> str:
        return self.test_class_name.rsplit(".", 1)[-1]

    def is_teacher_hidden(self) -> bool:
        return self.simple_class_name.startswith(TEACHER_HIDDEN_TEST_NAME_PREFIX)

    def is_teacher_public(self, assignment: Assignment) -> bool:
        if self.is_teacher_hidden():
            return False
        # Without student tests, every visible test class belongs to the teacher
        if not assignment.accepts_student_tests:
            return True
        return self.simple_class_name.startswith(TEACHER_TEST_NAME_PREFIX)

    def is_student(self, assignment: Assignment) -> bool:
        return (
            assignment.accepts_student_tests
            and not self.simple_class_name.startswith(TEACHER_TEST_NAME_PREFIX)
        )


class JUnitReportReader:
    """Parses JUnit XML result files into JUnitResults."""

    def read_xml(self, content: str) -> JUnitResults:
        """
        Parse one testsuite document.

        Args:
            content: XML text of a surefire or Gradle result file

        Returns:
            JUnitResults for the suite

        Raises:
            ET.ParseError: If the content is not well-formed XML
            ValueError: If the document has no testsuite element or bad counts
        """
        root = ET.fromstring(content)
        suite = root if root.tag == "testsuite" else root.find("testsuite")
        if suite is None:
            raise ValueError(f"Unrecognized JUnit XML, root tag: {root.tag}")

        class_name = suite.get("name", "")
        method_results = tuple(
            self._read_testcase(testcase, class_name)
            for testcase in suite.iter("testcase")
        )

        return JUnitResults(
            test_class_name=class_name,
            num_tests=int(suite.get("tests", "0")),
            num_errors=int(suite.get("errors", "0")),
            num_failures=int(suite.get("failures", "0")),
            num_skipped=int(suite.get("skipped", "0")),
            time_elapsed=_parse_time(suite.get("time")),
            junit_method_results=method_results,
        )

    @staticmethod
    def _read_testcase(testcase: ET.Element, suite_name: str) -> JUnitMethodResult:
        method_name = testcase.get("name", "")
        class_name = (testcase.get("classname") or suite_name).rsplit(".", 1)[-1]
        full_method_name = f"{class_name}.{method_name}"

        for tag, result_type in (
            ("failure", JUnitMethodResultType.FAILURE),
            ("error", JUnitMethodResultType.ERROR),
        ):
            element = testcase.find(tag)
            if element is not None:
                return JUnitMethodResult(
                    method_name=method_name,
                    full_method_name=full_method_name,
                    type=result_type,
                    failure_type=element.get("type"),
                    failure_error_line=element.get("message"),
                    failure_detail=(element.text or "").strip() or None,
                )

        if testcase.find("skipped") is not None:
            return JUnitMethodResult(
                method_name=method_name,
                full_method_name=full_method_name,
                type=JUnitMethodResultType.IGNORED,
            )

        return JUnitMethodResult(
            method_name=method_name,
            full_method_name=full_method_name,
            type=JUnitMethodResultType.SUCCESS,
        )

    def read_files(self, files: list[Path]) -> list[JUnitResults]:
        """
        Parse every result file, skipping the ones that can't be read.

        Args:
            files: XML files (one per test class)

        Returns:
            Parsed results, in the order of files
        """
        results = []
        for file in files:
            try:
                results.append(
                    self.read_xml(file.read_text(encoding="utf-8", errors="replace"))
                )
            except (ET.ParseError, ValueError) as e:
                logger.warning(f"Ignoring unreadable test report {file}: {e}")
        return results


def _parse_time(value: str | None) -> float:
    if not value:
        return 0.0
    # Surefire writes "1,234.5" for long runs on some locales
    return float(value.replace(",", ""))
