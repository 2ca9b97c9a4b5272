"""
Abstract repository interface for submission persistence.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod

from .models import (
    Assignment,
    AssignmentTestMethod,
    BuildOutput,
    Indicator,
    JacocoReport,
    JUnitReport,
    Submission,
    SubmissionReport,
    SubmissionStatus,
)


class SubmissionRepository(ABC):
    """
    Abstract base class for assignment, submission and report storage.

    Implementations must provide async-safe access to the data and handle
    their own connection management. Writes for one submission are serialized
    by the implementation.
    """

    # Assignment methods

    @abstractmethod
    async def save_assignment(self, assignment: Assignment) -> None:
        """
        Create or replace an assignment.

        Args:
            assignment: Assignment to persist
        """
        pass

    @abstractmethod
    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        """
        Retrieve an assignment by its ID.

        Args:
            assignment_id: ID of the assignment

        Returns:
            Assignment if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_assignments(self) -> list[Assignment]:
        """
        List all assignments.

        Returns:
            List of Assignment objects
        """
        pass

    @abstractmethod
    async def save_assignment_test_methods(
        self, assignment_id: str, test_methods: list[AssignmentTestMethod]
    ) -> None:
        """
        Replace the catalogue of test methods declared by an assignment.

        Args:
            assignment_id: ID of the assignment
            test_methods: Declared (class, method) pairs, in display order
        """
        pass

    @abstractmethod
    async def list_assignment_test_methods(
        self, assignment_id: str
    ) -> list[AssignmentTestMethod]:
        """
        Get the catalogue of test methods declared by an assignment.

        Args:
            assignment_id: ID of the assignment

        Returns:
            Declared test methods in the order they were saved
        """
        pass

    # Submission methods

    @abstractmethod
    async def create_submission(self, submission: Submission) -> None:
        """
        Create a new submission.

        Args:
            submission: Submission to persist

        Raises:
            Exception: If a submission with the same ID already exists
        """
        pass

    @abstractmethod
    async def get_submission(self, submission_id: str) -> Submission | None:
        """
        Retrieve a submission by its ID.

        Args:
            submission_id: ID of the submission

        Returns:
            Submission if found, None otherwise
        """
        pass

    @abstractmethod
    async def save_submission(self, submission: Submission) -> None:
        """
        Update a submission's status, status date, build report and rebuild principal.

        Args:
            submission: Submission with the new values

        Raises:
            Exception: If submission not found
        """
        pass

    @abstractmethod
    async def list_submissions_by_status(
        self, statuses: list[SubmissionStatus]
    ) -> list[Submission]:
        """
        List submissions whose status is one of the given statuses.

        Args:
            statuses: Statuses to match

        Returns:
            Matching submissions, oldest first
        """
        pass

    # Indicator methods

    @abstractmethod
    async def save_report(self, report: SubmissionReport) -> None:
        """
        Add one indicator row to a submission's report.

        Args:
            report: Indicator row to persist
        """
        pass

    @abstractmethod
    async def list_reports(self, submission_id: str) -> list[SubmissionReport]:
        """
        Get all indicator rows of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Indicator rows in insertion order
        """
        pass

    @abstractmethod
    async def delete_reports_except(
        self, submission_id: str, indicator: Indicator
    ) -> None:
        """
        Delete every indicator row of a submission except the given indicator.

        Args:
            submission_id: ID of the submission
            indicator: Indicator whose row is kept (usually PROJECT_STRUCTURE)
        """
        pass

    # Archived artifacts

    @abstractmethod
    async def save_build_output(self, build_output: BuildOutput) -> int:
        """
        Archive the raw output of a build.

        Args:
            build_output: Output to archive

        Returns:
            ID of the archived output
        """
        pass

    @abstractmethod
    async def get_build_output(self, build_output_id: int) -> BuildOutput | None:
        """
        Retrieve archived build output.

        Args:
            build_output_id: ID returned by save_build_output

        Returns:
            BuildOutput if found, None otherwise
        """
        pass

    @abstractmethod
    async def save_junit_report(self, report: JUnitReport) -> None:
        """
        Archive one per-class test result file.

        Args:
            report: Test result file to archive
        """
        pass

    @abstractmethod
    async def list_junit_reports(self, submission_id: str) -> list[JUnitReport]:
        """
        Get the archived test result files of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Archived test result files
        """
        pass

    @abstractmethod
    async def delete_junit_reports(self, submission_id: str) -> None:
        """
        Remove archived test result files of a submission (before a rebuild stores new ones).

        Args:
            submission_id: ID of the submission
        """
        pass

    @abstractmethod
    async def save_jacoco_report(self, report: JacocoReport) -> None:
        """
        Archive one coverage CSV.

        Args:
            report: Coverage file to archive
        """
        pass

    @abstractmethod
    async def list_jacoco_reports(self, submission_id: str) -> list[JacocoReport]:
        """
        Get the archived coverage files of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Archived coverage files
        """
        pass

    @abstractmethod
    async def delete_jacoco_reports(self, submission_id: str) -> None:
        """
        Remove archived coverage files of a submission.

        Args:
            submission_id: ID of the submission
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
