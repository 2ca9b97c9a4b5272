"""
Build worker: turns one submission into a persisted report.

The worker drives the build tool, hands the captured output to the
BuildReportBuilder, converts the resulting BuildReport into indicator rows
and archives the raw artifacts. When the assignment asks for student-test
coverage it runs a second, strictly sequential invocation with the teacher
test classes moved out of the way.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from dp_common.exceptions import BuildPipelineError, CoverageIsolationError
from dp_common.models import (
    TEACHER_TEST_NAME_PREFIX,
    Assignment,
    AssignmentTestMethod,
    BuildOutput,
    Compiler,
    Indicator,
    JacocoReport,
    JUnitReport,
    Submission,
    SubmissionReport,
    SubmissionStatus,
)
from dp_common.repository import SubmissionRepository

from .build_report import BuildReport, BuildReportBuilder, JUnitSummary, TestType
from .config import BuildSettings
from .invoker import GradleInvoker, InvocationResult, Invoker, MavenInvoker
from .layout import ProjectLayout

logger = logging.getLogger(__name__)

IGNORED_SUFFIX = ".ignore"

OK = "OK"
NOK = "NOK"
NOT_ENOUGH_TESTS = "Not Enough Tests"


@contextmanager
def teacher_tests_excluded(project_folder: Path) -> Iterator[list[Path]]:
    """
    Temporarily rename teacher test classes so the build tool doesn't find them.

    Every renamed file gets its original name back when the block exits,
    whether it exits normally, by exception or by cancellation.

    Args:
        project_folder: Root of the project

    Yields:
        Original paths of the renamed files

    Raises:
        CoverageIsolationError: If a file can't be renamed or restored
    """
    test_root = project_folder / "src" / "test"
    candidates = sorted(
        p
        for p in (test_root.rglob("*") if test_root.is_dir() else [])
        if p.is_file() and p.name.startswith(TEACHER_TEST_NAME_PREFIX)
    )

    moved: list[tuple[Path, Path]] = []
    try:
        for original in candidates:
            ignored = original.with_name(original.name + IGNORED_SUFFIX)
            try:
                original.rename(ignored)
            except OSError as e:
                raise CoverageIsolationError(f"Couldn't exclude {original}: {e}") from e
            moved.append((original, ignored))

        yield [original for original, _ in moved]

    finally:
        failed = []
        for original, ignored in reversed(moved):
            try:
                ignored.rename(original)
            except OSError as e:
                logger.error(f"Couldn't restore {original}: {e}")
                failed.append(original)
        if failed:
            raise CoverageIsolationError(f"Couldn't restore {len(failed)} test classes: {failed}")


class BuildWorker:
    """
    Builds submissions and assignments and records the outcome.

    A worker holds no per-build state, so one instance can serve many
    concurrent builds of different submissions.
    """

    def __init__(
        self,
        repository: SubmissionRepository,
        maven_invoker: Invoker | None = None,
        gradle_invoker: Invoker | None = None,
        report_builder: BuildReportBuilder | None = None,
        settings: BuildSettings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            repository: Where reports and artifacts are persisted
            maven_invoker: Invoker for Maven assignments (default: MavenInvoker)
            gradle_invoker: Invoker for Gradle assignments (default: GradleInvoker)
            report_builder: Builder for BuildReports
            settings: Settings for the default invokers (default: from environment)
        """
        settings = settings or BuildSettings.from_env()
        self.repository = repository
        self.maven_invoker = maven_invoker or MavenInvoker(settings)
        self.gradle_invoker = gradle_invoker or GradleInvoker(settings)
        self.report_builder = report_builder or BuildReportBuilder()

    def invoker_for(self, assignment: Assignment) -> Invoker:
        if assignment.compiler is Compiler.GRADLE:
            return self.gradle_invoker
        return self.maven_invoker

    async def check_project(
        self,
        submission: Submission,
        principal_name: str | None = None,
        rebuild_by_teacher: bool = False,
        dont_change_status_date: bool = False,
    ) -> BuildReport | None:
        """
        Build a submission and persist its report.

        Never raises for anything the submitted code does; infrastructure
        failures move the submission to FAILED.

        Args:
            submission: Submission whose project folder is already on disk
            principal_name: Identity the submitted code runs as (default: the submitter)
            rebuild_by_teacher: The build was requested by a teacher
            dont_change_status_date: Keep the submission's current status date

        Returns:
            The BuildReport, or None if the build was aborted or failed
        """
        tag = f"[{submission.authors or submission.submitter_user_id}]"

        try:
            assignment = await self.repository.get_assignment(submission.assignment_id)
            if assignment is None:
                raise BuildPipelineError(f"Assignment {submission.assignment_id} not found")

            submission.set_status(SubmissionStatus.RUNNING, dont_change_status_date)
            await self.repository.save_submission(submission)

            # Rebuilds run as the student who submitted, not as the teacher
            if rebuild_by_teacher or principal_name is None:
                principal_name = submission.submitter_user_id

            invoker = self.invoker_for(assignment)
            project_folder = Path(submission.project_folder)

            logger.info(
                f"{tag} Started {invoker.tool_name} invocation "
                f"(max: {assignment.max_memory_mb or '-'}Mb)"
            )
            result = await invoker.run(project_folder, principal_name, assignment.max_memory_mb)
            logger.info(f"{tag} Finished {invoker.tool_name} invocation (exit code {result.exit_code})")

            submission.build_report_id = await self.repository.save_build_output(
                BuildOutput(build_report=result.output)
            )

            if result.expired_by_timeout or result.too_much_output:
                await self._abort(submission, result, tag, dont_change_status_date)
                return None

            test_methods = await self.repository.list_assignment_test_methods(assignment.id)
            report = self.report_builder.build(
                result.output_lines, project_folder, assignment, test_methods
            )

            await self._save_indicators(submission, assignment, report, tag)
            await self._archive_junit_reports(submission, assignment)

            layout = ProjectLayout.for_compiler(assignment.compiler)
            if (
                assignment.accepts_student_tests
                and assignment.calculate_student_tests_coverage
                and layout.has_coverage_report(project_folder)
            ):
                await self._run_coverage_pass(submission, assignment, invoker, principal_name, tag)

            submission.set_status(
                SubmissionStatus.VALIDATED_REBUILT
                if rebuild_by_teacher
                else SubmissionStatus.VALIDATED,
                dont_change_status_date,
            )
            await self.repository.save_submission(submission)
            logger.info(f"{tag} Submission {submission.id} is {submission.status.value}")
            return report

        except Exception as e:
            logger.error(f"{tag} Build of submission {submission.id} failed: {e}", exc_info=True)
            submission.set_status(SubmissionStatus.FAILED, dont_change_status_date)
            try:
                await self.repository.save_submission(submission)
            except Exception as save_error:
                logger.error(
                    f"{tag} Couldn't mark submission {submission.id} as failed: {save_error}",
                    exc_info=True,
                )
            return None

    async def _abort(
        self,
        submission: Submission,
        result: InvocationResult,
        tag: str,
        dont_change_status_date: bool,
    ) -> None:
        """Record a build that hit the timeout or the output limit."""
        if result.expired_by_timeout:
            logger.warning(f"{tag} Maximum build time expired for submission {submission.id}")
            status = SubmissionStatus.ABORTED_BY_TIMEOUT
        else:
            logger.warning(f"{tag} Too much output for submission {submission.id}")
            status = SubmissionStatus.TOO_MUCH_OUTPUT

        await self.repository.delete_reports_except(submission.id, Indicator.PROJECT_STRUCTURE)
        await self.repository.delete_junit_reports(submission.id)
        await self.repository.delete_jacoco_reports(submission.id)

        submission.set_status(status, dont_change_status_date)
        await self.repository.save_submission(submission)

    async def _save_indicator(
        self,
        submission: Submission,
        indicator: Indicator,
        value: str,
        progress: int | None = None,
        goal: int | None = None,
    ) -> None:
        await self.repository.save_report(
            SubmissionReport(
                submission_id=submission.id,
                report_key=indicator.code,
                report_value=value,
                report_progress=progress,
                report_goal=goal,
            )
        )

    async def _save_indicators(
        self,
        submission: Submission,
        assignment: Assignment,
        report: BuildReport,
        tag: str,
    ) -> None:
        """Replace every indicator row except Project Structure."""
        await self.repository.delete_reports_except(submission.id, Indicator.PROJECT_STRUCTURE)

        if report.execution_failed():
            logger.warning(f"{tag} Build execution failed, no indicators computed")
            return

        compilation_errors = report.compilation_errors()
        await self._save_indicator(
            submission, Indicator.COMPILATION, NOK if compilation_errors else OK
        )
        if compilation_errors:
            return

        if report.checkstyle_validation_active():
            await self._save_indicator(
                submission, Indicator.CHECKSTYLE, NOK if report.checkstyle_errors() else OK
            )

        if assignment.accepts_student_tests:
            summary = report.junit_summary_as_object(TestType.STUDENT)
            if summary is not None and (summary.num_errors > 0 or summary.num_failures > 0):
                value = NOK
            elif report.not_enough_student_tests_message() is not None:
                value = NOT_ENOUGH_TESTS
            else:
                value = OK
            await self._save_indicator(
                submission,
                Indicator.STUDENT_UNIT_TESTS,
                value,
                progress=summary.progress if summary is not None else 0,
                goal=assignment.min_student_tests or 0,
            )

        for test_type, indicator in (
            (TestType.TEACHER, Indicator.TEACHER_UNIT_TESTS),
            (TestType.HIDDEN, Indicator.HIDDEN_UNIT_TESTS),
        ):
            summary = report.junit_summary_as_object(test_type)
            if summary is not None:
                await self._save_indicator(
                    submission,
                    indicator,
                    _summary_value(summary),
                    progress=summary.progress,
                    goal=summary.num_tests,
                )

    async def _archive_junit_reports(self, submission: Submission, assignment: Assignment) -> None:
        layout = ProjectLayout.for_compiler(assignment.compiler)
        await self.repository.delete_junit_reports(submission.id)
        for file in layout.junit_report_files(Path(submission.project_folder)):
            await self.repository.save_junit_report(
                JUnitReport(
                    submission_id=submission.id,
                    file_name=file.name,
                    xml_report=file.read_text(encoding="utf-8", errors="replace"),
                )
            )

    async def _run_coverage_pass(
        self,
        submission: Submission,
        assignment: Assignment,
        invoker: Invoker,
        principal_name: str,
        tag: str,
    ) -> None:
        """Measure the coverage of the student tests alone and archive it."""
        project_folder = Path(submission.project_folder)
        layout = ProjectLayout.for_compiler(assignment.compiler)

        await self.repository.delete_jacoco_reports(submission.id)

        with teacher_tests_excluded(project_folder) as excluded:
            logger.info(
                f"{tag} Started coverage invocation without {len(excluded)} teacher test classes"
            )
            result = await invoker.run(project_folder, principal_name, assignment.max_memory_mb)

        if result.expired_by_timeout or result.too_much_output:
            logger.warning(f"{tag} Coverage invocation aborted, coverage discarded")
            return

        coverage_report = self.report_builder.build(result.output_lines, project_folder, assignment)
        if coverage_report.has_junit_errors(TestType.STUDENT):
            logger.warning(
                f"{tag} Student tests fail without the teacher tests, coverage discarded: "
                f"{coverage_report.junit_summary(TestType.STUDENT)}"
            )
            return

        files = layout.coverage_report_files(project_folder)
        if not files:
            logger.warning(f"{tag} Coverage invocation produced no coverage report")
            return

        for file in files:
            await self.repository.save_jacoco_report(
                JacocoReport(
                    submission_id=submission.id,
                    file_name=file.name,
                    csv_report=file.read_text(encoding="utf-8", errors="replace"),
                )
            )
        logger.info(f"{tag} Student tests coverage: {coverage_report.coverage_percentage()}%")

    async def check_assignment(
        self,
        assignment_folder: str | Path,
        assignment: Assignment,
        principal_name: str | None = None,
    ) -> BuildReport | None:
        """
        Build the teacher's reference project and record its test catalogue.

        Every teacher test method found becomes an AssignmentTestMethod, so
        later submissions get a results matrix with one slot per method.

        Args:
            assignment_folder: Root of the reference project
            assignment: Assignment being checked
            principal_name: Identity the reference code runs as

        Returns:
            The BuildReport, or None if the build hit the timeout or the output limit

        Raises:
            InvocationError: If the build tool cannot be started
            InvariantViolationError: If there are hidden tests but no visibility policy
        """
        invoker = self.invoker_for(assignment)
        folder = Path(assignment_folder)

        logger.info(f"[{assignment.id}] Started {invoker.tool_name} invocation to check assignment")
        result = await invoker.run(folder, principal_name, assignment.max_memory_mb)

        if result.expired_by_timeout or result.too_much_output:
            logger.warning(f"[{assignment.id}] Assignment check aborted")
            return None

        report = self.report_builder.build(result.output_lines, folder, assignment)

        if report.junit_summary_as_object(TestType.HIDDEN) is not None:
            logger.info(f"[{assignment.id}] Hidden tests: {assignment.hidden_tests_message()}")

        test_methods = [
            AssignmentTestMethod(test_class=results.simple_class_name, test_method=method.method_name)
            for results in report.junit_results
            if results.is_teacher_public(assignment) or results.is_teacher_hidden()
            for method in results.junit_method_results
        ]
        await self.repository.save_assignment_test_methods(assignment.id, test_methods)
        logger.info(f"[{assignment.id}] Found {len(test_methods)} teacher test methods")

        return self.report_builder.build(
            result.output_lines, folder, assignment, assignment_test_methods=test_methods
        )


def _summary_value(summary: JUnitSummary) -> str:
    return NOK if summary.num_errors > 0 or summary.num_failures > 0 else OK
