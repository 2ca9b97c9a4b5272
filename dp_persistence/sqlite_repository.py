"""
SQLite implementation of the submission repository.

Uses aiosqlite for async operations and provides async-safe access.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import asyncio
from datetime import datetime

import aiosqlite

from dp_common.models import (
    Assignment,
    AssignmentTestMethod,
    BuildOutput,
    Compiler,
    Indicator,
    JacocoReport,
    JUnitReport,
    Language,
    Submission,
    SubmissionReport,
    SubmissionStatus,
    TestVisibility,
)
from dp_common.repository import SubmissionRepository

_SUBMISSION_COLUMNS = (
    "id, assignment_id, submitter_user_id, project_folder, status, status_date, "
    "submission_date, authors, build_report_id, rebuild_principal"
)


class SQLiteSubmissionRepository(SubmissionRepository):
    """
    SQLite-based submission storage implementation.

    Uses a single database file with multiple tables:
    - assignments: Assignment metadata needed by the build pipeline
    - assignment_test_methods: Declared test methods, per assignment
    - submissions: Submissions with their status and archived output FK
    - submission_reports: Indicator rows, per submission
    - build_outputs: Raw build-tool output
    - junit_reports: Per-class test result XML, per submission
    - jacoco_reports: Coverage CSV, per submission
    """

    def __init__(self, db_path: str = "dp_submissions.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        # Commits of concurrent builds must not interleave
        self._write_lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def _write(self, sql: str, params: tuple | list = ()) -> int | None:
        """Execute one write statement and commit it, returning the last row id."""
        conn = await self._get_connection()
        async with self._write_lock:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.lastrowid

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - assignments table: one row per assignment
        - assignment_test_methods table: ordered catalogue with FK to assignments
        - submissions table: FK to assignments and build_outputs
        - submission_reports table: indicator rows with FK to submissions
        - build_outputs, junit_reports, jacoco_reports tables: archived artifacts
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS assignments (
                id TEXT PRIMARY KEY,
                name TEXT,
                language TEXT NOT NULL,
                compiler TEXT NOT NULL,
                package_name TEXT,
                accepts_student_tests INTEGER NOT NULL DEFAULT 0,
                min_student_tests INTEGER,
                calculate_student_tests_coverage INTEGER NOT NULL DEFAULT 0,
                hidden_tests_visibility TEXT,
                mandatory_tests_suffix TEXT,
                max_memory_mb INTEGER
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS assignment_test_methods (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                assignment_id TEXT NOT NULL,
                test_class TEXT NOT NULL,
                test_method TEXT NOT NULL,
                FOREIGN KEY (assignment_id) REFERENCES assignments(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS build_outputs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                build_report TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS submissions (
                id TEXT PRIMARY KEY,
                assignment_id TEXT NOT NULL,
                submitter_user_id TEXT NOT NULL,
                project_folder TEXT NOT NULL,
                status TEXT NOT NULL,
                status_date TEXT,
                submission_date TEXT NOT NULL,
                authors TEXT,
                build_report_id INTEGER,
                rebuild_principal TEXT,
                FOREIGN KEY (assignment_id) REFERENCES assignments(id),
                FOREIGN KEY (build_report_id) REFERENCES build_outputs(id)
            )
        """)

        # Create index on status for the controller's polling query
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_submissions_status
            ON submissions(status)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS submission_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id TEXT NOT NULL,
                report_key TEXT NOT NULL,
                report_value TEXT NOT NULL,
                report_progress INTEGER,
                report_goal INTEGER,
                FOREIGN KEY (submission_id) REFERENCES submissions(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_submission_reports_submission_id
            ON submission_reports(submission_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS junit_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                xml_report TEXT NOT NULL,
                FOREIGN KEY (submission_id) REFERENCES submissions(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jacoco_reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                csv_report TEXT NOT NULL,
                FOREIGN KEY (submission_id) REFERENCES submissions(id) ON DELETE CASCADE
            )
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Assignments

    async def save_assignment(self, assignment: Assignment) -> None:
        """
        Create or replace an assignment.

        Args:
            assignment: Assignment to persist
        """
        await self._write(
            """
            INSERT INTO assignments (
                id, name, language, compiler, package_name, accepts_student_tests,
                min_student_tests, calculate_student_tests_coverage,
                hidden_tests_visibility, mandatory_tests_suffix, max_memory_mb
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                language = excluded.language,
                compiler = excluded.compiler,
                package_name = excluded.package_name,
                accepts_student_tests = excluded.accepts_student_tests,
                min_student_tests = excluded.min_student_tests,
                calculate_student_tests_coverage = excluded.calculate_student_tests_coverage,
                hidden_tests_visibility = excluded.hidden_tests_visibility,
                mandatory_tests_suffix = excluded.mandatory_tests_suffix,
                max_memory_mb = excluded.max_memory_mb
            """,
            (
                assignment.id,
                assignment.name,
                assignment.language.value,
                assignment.compiler.value,
                assignment.package_name,
                1 if assignment.accepts_student_tests else 0,
                assignment.min_student_tests,
                1 if assignment.calculate_student_tests_coverage else 0,
                assignment.hidden_tests_visibility.value
                if assignment.hidden_tests_visibility
                else None,
                assignment.mandatory_tests_suffix,
                assignment.max_memory_mb,
            ),
        )

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        """
        Retrieve an assignment by its ID.

        Args:
            assignment_id: ID of the assignment

        Returns:
            Assignment if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, name, language, compiler, package_name, accepts_student_tests,
                   min_student_tests, calculate_student_tests_coverage,
                   hidden_tests_visibility, mandatory_tests_suffix, max_memory_mb
            FROM assignments WHERE id = ?
            """,
            (assignment_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        return self._row_to_assignment(row)

    async def list_assignments(self) -> list[Assignment]:
        """
        List all assignments.

        Returns:
            List of Assignment objects ordered by ID
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, name, language, compiler, package_name, accepts_student_tests,
                   min_student_tests, calculate_student_tests_coverage,
                   hidden_tests_visibility, mandatory_tests_suffix, max_memory_mb
            FROM assignments ORDER BY id
            """
        )
        rows = await cursor.fetchall()

        return [self._row_to_assignment(row) for row in rows]

    @staticmethod
    def _row_to_assignment(row) -> Assignment:
        (
            assignment_id,
            name,
            language,
            compiler,
            package_name,
            accepts_student_tests,
            min_student_tests,
            calculate_coverage,
            hidden_tests_visibility,
            mandatory_tests_suffix,
            max_memory_mb,
        ) = row
        return Assignment(
            id=assignment_id,
            name=name,
            language=Language(language),
            compiler=Compiler(compiler),
            package_name=package_name,
            accepts_student_tests=bool(accepts_student_tests),
            min_student_tests=min_student_tests,
            calculate_student_tests_coverage=bool(calculate_coverage),
            hidden_tests_visibility=TestVisibility(hidden_tests_visibility)
            if hidden_tests_visibility
            else None,
            mandatory_tests_suffix=mandatory_tests_suffix,
            max_memory_mb=max_memory_mb,
        )

    async def save_assignment_test_methods(
        self, assignment_id: str, test_methods: list[AssignmentTestMethod]
    ) -> None:
        """
        Replace the catalogue of test methods declared by an assignment.

        Args:
            assignment_id: ID of the assignment
            test_methods: Declared (class, method) pairs, in display order
        """
        conn = await self._get_connection()

        async with self._write_lock:
            await conn.execute(
                "DELETE FROM assignment_test_methods WHERE assignment_id = ?",
                (assignment_id,),
            )
            await conn.executemany(
                """
                INSERT INTO assignment_test_methods (assignment_id, test_class, test_method)
                VALUES (?, ?, ?)
                """,
                [(assignment_id, m.test_class, m.test_method) for m in test_methods],
            )
            await conn.commit()

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
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT test_class, test_method FROM assignment_test_methods
            WHERE assignment_id = ?
            ORDER BY id
            """,
            (assignment_id,),
        )
        rows = await cursor.fetchall()

        return [
            AssignmentTestMethod(test_class=test_class, test_method=test_method)
            for test_class, test_method in rows
        ]

    # Submissions

    async def create_submission(self, submission: Submission) -> None:
        """
        Create a new submission.

        Args:
            submission: Submission to persist
        """
        await self._write(
            f"INSERT INTO submissions ({_SUBMISSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                submission.id,
                submission.assignment_id,
                submission.submitter_user_id,
                submission.project_folder,
                submission.status.value,
                submission.status_date.isoformat() if submission.status_date else None,
                submission.submission_date.isoformat(),
                submission.authors,
                submission.build_report_id,
                submission.rebuild_principal,
            ),
        )

    async def get_submission(self, submission_id: str) -> Submission | None:
        """
        Retrieve a submission by its ID.

        Args:
            submission_id: ID of the submission

        Returns:
            Submission if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_SUBMISSION_COLUMNS} FROM submissions WHERE id = ?",
            (submission_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        return self._row_to_submission(row)

    async def save_submission(self, submission: Submission) -> None:
        """
        Update a submission's status, status date, build report and rebuild principal.

        Args:
            submission: Submission with the new values

        Raises:
            KeyError: If submission not found
        """
        conn = await self._get_connection()

        async with self._write_lock:
            cursor = await conn.execute(
                """
                UPDATE submissions
                SET status = ?, status_date = ?, build_report_id = ?, rebuild_principal = ?
                WHERE id = ?
                """,
                (
                    submission.status.value,
                    submission.status_date.isoformat() if submission.status_date else None,
                    submission.build_report_id,
                    submission.rebuild_principal,
                    submission.id,
                ),
            )
            await conn.commit()

        if cursor.rowcount == 0:
            raise KeyError(f"Submission {submission.id} not found")

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
        if not statuses:
            return []

        conn = await self._get_connection()

        placeholders = ", ".join("?" for _ in statuses)
        cursor = await conn.execute(
            f"""
            SELECT {_SUBMISSION_COLUMNS} FROM submissions
            WHERE status IN ({placeholders})
            ORDER BY submission_date
            """,
            [status.value for status in statuses],
        )
        rows = await cursor.fetchall()

        return [self._row_to_submission(row) for row in rows]

    @staticmethod
    def _row_to_submission(row) -> Submission:
        (
            submission_id,
            assignment_id,
            submitter_user_id,
            project_folder,
            status,
            status_date_str,
            submission_date_str,
            authors,
            build_report_id,
            rebuild_principal,
        ) = row
        return Submission(
            id=submission_id,
            assignment_id=assignment_id,
            submitter_user_id=submitter_user_id,
            project_folder=project_folder,
            status=SubmissionStatus(status),
            status_date=datetime.fromisoformat(status_date_str)
            if status_date_str
            else None,
            submission_date=datetime.fromisoformat(submission_date_str),
            authors=authors,
            build_report_id=build_report_id,
            rebuild_principal=rebuild_principal,
        )

    # Indicators

    async def save_report(self, report: SubmissionReport) -> None:
        """
        Add one indicator row to a submission's report.

        Args:
            report: Indicator row to persist
        """
        report.id = await self._write(
            """
            INSERT INTO submission_reports
                (submission_id, report_key, report_value, report_progress, report_goal)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                report.submission_id,
                report.report_key,
                report.report_value,
                report.report_progress,
                report.report_goal,
            ),
        )

    async def list_reports(self, submission_id: str) -> list[SubmissionReport]:
        """
        Get all indicator rows of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Indicator rows in insertion order
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, submission_id, report_key, report_value, report_progress, report_goal
            FROM submission_reports
            WHERE submission_id = ?
            ORDER BY id
            """,
            (submission_id,),
        )
        rows = await cursor.fetchall()

        reports = []
        for row in rows:
            report_id, submission_id, key, value, progress, goal = row
            reports.append(
                SubmissionReport(
                    id=report_id,
                    submission_id=submission_id,
                    report_key=key,
                    report_value=value,
                    report_progress=progress,
                    report_goal=goal,
                )
            )

        return reports

    async def delete_reports_except(
        self, submission_id: str, indicator: Indicator
    ) -> None:
        """
        Delete every indicator row of a submission except the given indicator.

        Args:
            submission_id: ID of the submission
            indicator: Indicator whose row is kept
        """
        await self._write(
            "DELETE FROM submission_reports WHERE submission_id = ? AND report_key != ?",
            (submission_id, indicator.code),
        )

    # Archived artifacts

    async def save_build_output(self, build_output: BuildOutput) -> int:
        """
        Archive the raw output of a build.

        Args:
            build_output: Output to archive

        Returns:
            ID of the archived output
        """
        build_output.id = await self._write(
            "INSERT INTO build_outputs (build_report, created_at) VALUES (?, ?)",
            (build_output.build_report, build_output.created_at.isoformat()),
        )
        return build_output.id

    async def get_build_output(self, build_output_id: int) -> BuildOutput | None:
        """
        Retrieve archived build output.

        Args:
            build_output_id: ID returned by save_build_output

        Returns:
            BuildOutput if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT id, build_report, created_at FROM build_outputs WHERE id = ?",
            (build_output_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        output_id, build_report, created_at_str = row
        return BuildOutput(
            id=output_id,
            build_report=build_report,
            created_at=datetime.fromisoformat(created_at_str),
        )

    async def save_junit_report(self, report: JUnitReport) -> None:
        """
        Archive one per-class test result file.

        Args:
            report: Test result file to archive
        """
        report.id = await self._write(
            "INSERT INTO junit_reports (submission_id, file_name, xml_report) VALUES (?, ?, ?)",
            (report.submission_id, report.file_name, report.xml_report),
        )

    async def list_junit_reports(self, submission_id: str) -> list[JUnitReport]:
        """
        Get the archived test result files of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Archived test result files ordered by file name
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, submission_id, file_name, xml_report FROM junit_reports
            WHERE submission_id = ?
            ORDER BY file_name
            """,
            (submission_id,),
        )
        rows = await cursor.fetchall()

        return [
            JUnitReport(id=report_id, submission_id=sid, file_name=name, xml_report=xml)
            for report_id, sid, name, xml in rows
        ]

    async def delete_junit_reports(self, submission_id: str) -> None:
        """
        Remove archived test result files of a submission.

        Args:
            submission_id: ID of the submission
        """
        await self._write(
            "DELETE FROM junit_reports WHERE submission_id = ?", (submission_id,)
        )

    async def save_jacoco_report(self, report: JacocoReport) -> None:
        """
        Archive one coverage CSV.

        Args:
            report: Coverage file to archive
        """
        report.id = await self._write(
            "INSERT INTO jacoco_reports (submission_id, file_name, csv_report) VALUES (?, ?, ?)",
            (report.submission_id, report.file_name, report.csv_report),
        )

    async def list_jacoco_reports(self, submission_id: str) -> list[JacocoReport]:
        """
        Get the archived coverage files of a submission.

        Args:
            submission_id: ID of the submission

        Returns:
            Archived coverage files ordered by file name
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, submission_id, file_name, csv_report FROM jacoco_reports
            WHERE submission_id = ?
            ORDER BY file_name
            """,
            (submission_id,),
        )
        rows = await cursor.fetchall()

        return [
            JacocoReport(id=report_id, submission_id=sid, file_name=name, csv_report=csv)
            for report_id, sid, name, csv in rows
        ]

    async def delete_jacoco_reports(self, submission_id: str) -> None:
        """
        Remove archived coverage files of a submission.

        Args:
            submission_id: ID of the submission
        """
        await self._write(
            "DELETE FROM jacoco_reports WHERE submission_id = ?", (submission_id,)
        )
