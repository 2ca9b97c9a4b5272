"""
Data models for assignment submissions and their build reports.

These models represent the domain objects used throughout the application,
independent of the underlying storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .exceptions import InvariantViolationError

# Test classes are classified by the prefix of their simple name
TEST_NAME_PREFIX = "Test"
TEACHER_TEST_NAME_PREFIX = "TestTeacher"
TEACHER_HIDDEN_TEST_NAME_PREFIX = "TestTeacherHidden"


class Language(str, Enum):
    JAVA = "JAVA"
    KOTLIN = "KOTLIN"
    ANDROID = "ANDROID"

    @property
    def source_folder(self) -> str:
        """Name of the folder under src/main and src/test holding sources."""
        # Android projects are still written in Kotlin
        return "java" if self is Language.JAVA else "kotlin"


class Compiler(str, Enum):
    MAVEN = "MAVEN"
    GRADLE = "GRADLE"


class TestVisibility(str, Enum):
    """How much of the hidden teacher tests' results the students get to see."""

    __test__ = False  # not a pytest test class

    HIDE_EVERYTHING = "HIDE_EVERYTHING"
    SHOW_OK_NOK = "SHOW_OK_NOK"
    SHOW_PROGRESS = "SHOW_PROGRESS"


class SubmissionStatus(str, Enum):
    """
    Lifecycle of a submission build.

    Submissions progress through states: submitted -> running -> one terminal state.
    Terminal states: aborted by timeout, too much output, validated,
    validated rebuilt, failed (infrastructure error).
    """

    SUBMITTED = "SUBMITTED"
    SUBMITTED_FOR_REBUILD = "SUBMITTED_FOR_REBUILD"
    RUNNING = "RUNNING"
    ABORTED_BY_TIMEOUT = "ABORTED_BY_TIMEOUT"
    TOO_MUCH_OUTPUT = "TOO_MUCH_OUTPUT"
    VALIDATED = "VALIDATED"
    VALIDATED_REBUILT = "VALIDATED_REBUILT"
    FAILED = "FAILED"

    @property
    def is_pending(self) -> bool:
        return self in (SubmissionStatus.SUBMITTED, SubmissionStatus.SUBMITTED_FOR_REBUILD)

    @property
    def is_terminal(self) -> bool:
        return not self.is_pending and self is not SubmissionStatus.RUNNING


class Indicator(Enum):
    """The fixed set of report dimensions. Codes are persisted, so they never change."""

    PROJECT_STRUCTURE = ("PS", "Project Structure")
    COMPILATION = ("C", "Compilation")
    CHECKSTYLE = ("CS", "Code Quality (Checkstyle)")
    TEACHER_UNIT_TESTS = ("TT", "Teacher Unit Tests")
    STUDENT_UNIT_TESTS = ("ST", "Student Unit Tests")
    HIDDEN_UNIT_TESTS = ("HT", "Teacher Hidden Unit Tests")

    def __init__(self, code: str, description: str):
        self.code = code
        self.description = description

    @classmethod
    def from_code(cls, code: str | None) -> "Indicator | None":
        """
        Look up an indicator by its persisted code.

        Args:
            code: Indicator code (e.g. "C"), or None

        Returns:
            The matching Indicator, or None if code is None

        Raises:
            ValueError: If no indicator has this code
        """
        if code is None:
            return None
        for indicator in cls:
            if indicator.code == code:
                return indicator
        raise ValueError(f"No matching Indicator for code {code}")


@dataclass(frozen=True)
class AssignmentTestMethod:
    """A (test class, test method) pair the assignment expects to exist."""

    test_class: str  # Simple class name, e.g. "TestTeacherCalculator"
    test_method: str


@dataclass(frozen=True)
class Assignment:
    """
    A teacher-authored programming exercise.

    Only the fields the build pipeline needs are modelled here.
    """

    id: str
    language: Language = Language.JAVA
    compiler: Compiler = Compiler.MAVEN
    package_name: str | None = None  # e.g. "org.dropproject.samples"
    accepts_student_tests: bool = False
    min_student_tests: int | None = None
    calculate_student_tests_coverage: bool = False
    hidden_tests_visibility: TestVisibility | None = None
    mandatory_tests_suffix: str | None = None  # e.g. "_MANDATORY"
    max_memory_mb: int | None = None
    name: str | None = None

    def hidden_tests_message(self) -> str:
        """Describe what students see from the hidden tests."""
        if self.hidden_tests_visibility is None:
            raise InvariantViolationError(
                f"Assignment {self.id} has no visibility policy for hidden tests"
            )
        return {
            TestVisibility.HIDE_EVERYTHING: "The results will be completely hidden from the students.",
            TestVisibility.SHOW_OK_NOK: "Students will only see if they pass all the hidden tests or not.",
            TestVisibility.SHOW_PROGRESS: "Students will only see the number of tests passed.",
        }[self.hidden_tests_visibility]

    def to_dict(self) -> dict[str, Any]:
        """Convert assignment to dictionary format (for JSON serialization)."""
        return {
            "id": self.id,
            "name": self.name,
            "language": self.language.value,
            "compiler": self.compiler.value,
            "package_name": self.package_name,
            "accepts_student_tests": self.accepts_student_tests,
            "min_student_tests": self.min_student_tests,
            "calculate_student_tests_coverage": self.calculate_student_tests_coverage,
            "hidden_tests_visibility": self.hidden_tests_visibility.value
            if self.hidden_tests_visibility
            else None,
            "mandatory_tests_suffix": self.mandatory_tests_suffix,
            "max_memory_mb": self.max_memory_mb,
        }


@dataclass
class Submission:
    """
    One student's (or group's) attempt at an assignment.

    The project folder is materialized on disk before the submission is queued.
    """

    id: str
    assignment_id: str
    submitter_user_id: str
    project_folder: str
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    status_date: datetime | None = None
    submission_date: datetime = field(default_factory=lambda: datetime.now(UTC))
    authors: str | None = None  # e.g. "a21700001,a21700002"
    build_report_id: int | None = None  # FK to the archived build output
    rebuild_principal: str | None = None  # Teacher who requested a rebuild

    def set_status(self, status: SubmissionStatus, dont_update_status_date: bool = False) -> None:
        """Change status, recording when it happened unless told otherwise."""
        self.status = status
        if not dont_update_status_date:
            self.status_date = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Convert submission to dictionary format (for JSON serialization)."""
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "submitter_user_id": self.submitter_user_id,
            "authors": self.authors,
            "status": self.status.value,
            "status_date": self.status_date.isoformat() if self.status_date else None,
            "submission_date": self.submission_date.isoformat(),
            "build_report_id": self.build_report_id,
        }


@dataclass
class SubmissionReport:
    """One indicator row of a submission's report."""

    submission_id: str
    report_key: str  # Indicator code
    report_value: str  # "OK", "NOK", "Not Enough Tests" or free text
    report_progress: int | None = None
    report_goal: int | None = None
    id: int | None = None

    @property
    def indicator(self) -> Indicator | None:
        return Indicator.from_code(self.report_key)

    def to_dict(self) -> dict[str, Any]:
        """Convert report row to dictionary format (for JSON serialization)."""
        indicator = self.indicator
        result: dict[str, Any] = {
            "key": self.report_key,
            "label": indicator.description if indicator else None,
            "value": self.report_value,
        }
        if self.report_progress is not None:
            result["progress"] = self.report_progress
        if self.report_goal is not None:
            result["goal"] = self.report_goal
        return result


@dataclass
class BuildOutput:
    """Raw build-tool output archived for audit and debugging."""

    build_report: str
    id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class JUnitReport:
    """One archived per-class test result file (surefire / gradle XML)."""

    submission_id: str
    file_name: str
    xml_report: str
    id: int | None = None


@dataclass
class JacocoReport:
    """One archived coverage CSV produced by the coverage isolation pass."""

    submission_id: str
    file_name: str
    csv_report: str
    id: int | None = None
