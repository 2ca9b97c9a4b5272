"""
Admin CLI for managing assignments and submissions.

Provides commands to register assignments, queue submissions for the
controller, request teacher rebuilds and print submission reports.
"""

import asyncio
import json
import os
import sys
import uuid
from pathlib import Path

import click

from dp_builder.build_report import BuildReportBuilder, TestType
from dp_builder.layout import ProjectLayout
from dp_builder.worker import BuildWorker
from dp_common.models import (
    Assignment,
    AssignmentTestMethod,
    Compiler,
    Indicator,
    Language,
    Submission,
    SubmissionReport,
    SubmissionStatus,
    TestVisibility,
)
from dp_persistence.sqlite_repository import SQLiteSubmissionRepository


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("DP_DB_PATH", "dp_submissions.db")


def get_repository() -> SQLiteSubmissionRepository:
    """Get the repository instance."""
    return SQLiteSubmissionRepository(get_db_path())


def parse_test_method(value: str) -> AssignmentTestMethod:
    """Parse "TestClass:testMethod"."""
    test_class, sep, test_method = value.partition(":")
    if not sep or not test_class or not test_method:
        raise click.BadParameter(f"Expected TestClass:testMethod, got {value}")
    return AssignmentTestMethod(test_class=test_class, test_method=test_method)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


@click.group()
def cli():
    """DP Admin - Manage assignments and submissions of the build pipeline."""
    pass


@cli.group()
def assignment():
    """Manage assignments."""
    pass


@cli.group()
def submission():
    """Manage submissions."""
    pass


# ============================================================================
# Assignment Commands
# ============================================================================


@assignment.command("create")
@click.argument("assignment_id")
@click.option("--name", default=None, help="Assignment display name")
@click.option(
    "--language",
    type=click.Choice([lang.value for lang in Language], case_sensitive=False),
    default=Language.JAVA.value,
    show_default=True,
)
@click.option(
    "--compiler",
    type=click.Choice([c.value for c in Compiler], case_sensitive=False),
    default=Compiler.MAVEN.value,
    show_default=True,
)
@click.option("--package", "package_name", default=None, help="Package of the assignment code")
@click.option("--accepts-student-tests", is_flag=True, help="Students must write their own tests")
@click.option("--min-student-tests", type=int, default=None, help="Minimum number of student tests")
@click.option("--coverage", is_flag=True, help="Measure the coverage of the student tests")
@click.option(
    "--hidden-visibility",
    type=click.Choice([v.value for v in TestVisibility], case_sensitive=False),
    default=None,
    help="What students see of the hidden tests",
)
@click.option("--mandatory-suffix", default=None, help="Suffix of mandatory test methods")
@click.option("--max-memory", type=int, default=None, help="Heap cap for submitted code (MB)")
@click.option(
    "--test-method",
    "test_methods",
    multiple=True,
    help="Declared test method, as TestClass:testMethod (repeatable)",
)
def assignment_create(
    assignment_id: str,
    name: str | None,
    language: str,
    compiler: str,
    package_name: str | None,
    accepts_student_tests: bool,
    min_student_tests: int | None,
    coverage: bool,
    hidden_visibility: str | None,
    mandatory_suffix: str | None,
    max_memory: int | None,
    test_methods: tuple[str, ...],
):
    """Create or update an assignment."""
    if min_student_tests is not None and not accepts_student_tests:
        click.echo("Error: --min-student-tests requires --accepts-student-tests", err=True)
        sys.exit(1)

    methods = [parse_test_method(m) for m in test_methods]

    assignment_obj = Assignment(
        id=assignment_id,
        name=name,
        language=Language(language.upper()),
        compiler=Compiler(compiler.upper()),
        package_name=package_name,
        accepts_student_tests=accepts_student_tests,
        min_student_tests=min_student_tests,
        calculate_student_tests_coverage=coverage,
        hidden_tests_visibility=TestVisibility(hidden_visibility.upper())
        if hidden_visibility
        else None,
        mandatory_tests_suffix=mandatory_suffix,
        max_memory_mb=max_memory,
    )

    async def create():
        repo = get_repository()
        await repo.initialize()

        try:
            await repo.save_assignment(assignment_obj)
            if methods:
                await repo.save_assignment_test_methods(assignment_id, methods)

            click.echo("✓ Assignment saved successfully")
            click.echo(f"  ID:       {assignment_obj.id}")
            click.echo(f"  Language: {assignment_obj.language.value}")
            click.echo(f"  Compiler: {assignment_obj.compiler.value}")
            if methods:
                click.echo(f"  Declared test methods: {len(methods)}")

        finally:
            await repo.close()

    run_async(create())


@assignment.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def assignment_list(json_output: bool):
    """List all assignments."""

    async def list_assignments():
        repo = get_repository()
        await repo.initialize()

        try:
            assignments = await repo.list_assignments()

            if json_output:
                click.echo(json.dumps([a.to_dict() for a in assignments], indent=2))
                return

            if not assignments:
                click.echo("No assignments found.")
                return

            click.echo(f"\n{'ID':<25} {'Language':<10} {'Compiler':<10} {'Student tests':<15}")
            click.echo("-" * 65)
            for a in assignments:
                student_tests = (
                    f"min {a.min_student_tests or 0}" if a.accepts_student_tests else "no"
                )
                click.echo(
                    f"{a.id:<25} {a.language.value:<10} {a.compiler.value:<10} {student_tests:<15}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_assignments())


@assignment.command("check")
@click.argument("assignment_id")
@click.argument("folder", type=click.Path(exists=True, file_okay=False))
def assignment_check(assignment_id: str, folder: str):
    """Build the reference project FOLDER and record its teacher test methods."""

    async def check():
        repo = get_repository()
        await repo.initialize()

        try:
            assignment_obj = await repo.get_assignment(assignment_id)
            if not assignment_obj:
                click.echo(f"Error: Assignment not found: {assignment_id}", err=True)
                sys.exit(1)

            report = await BuildWorker(repo).check_assignment(folder, assignment_obj)
            if report is None:
                click.echo("Error: Assignment build aborted (timeout or too much output)", err=True)
                sys.exit(1)

            errors = report.compilation_errors()
            if errors:
                click.echo("Compilation errors:")
                for error in errors:
                    click.echo(f"  {error}")
                sys.exit(1)

            for test_type in (TestType.TEACHER, TestType.HIDDEN):
                summary = report.junit_summary(test_type)
                if summary:
                    click.echo(f"{test_type.value}: {summary}")
            click.echo(f"✓ Found {len(report.assignment_test_methods)} teacher test methods")

        finally:
            await repo.close()

    run_async(check())


# ============================================================================
# Submission Commands
# ============================================================================


@submission.command("submit")
@click.argument("assignment_id")
@click.argument("folder", type=click.Path(exists=True, file_okay=False))
@click.option("--user", "user_id", required=True, help="Submitting user")
@click.option("--authors", default=None, help="Comma separated group members")
def submission_submit(assignment_id: str, folder: str, user_id: str, authors: str | None):
    """Queue the project in FOLDER as a submission to an assignment."""

    async def submit():
        repo = get_repository()
        await repo.initialize()

        try:
            assignment_obj = await repo.get_assignment(assignment_id)
            if not assignment_obj:
                click.echo(f"Error: Assignment not found: {assignment_id}", err=True)
                sys.exit(1)

            project_folder = Path(folder).absolute()
            layout = ProjectLayout.for_compiler(assignment_obj.compiler)
            if layout.build_file(project_folder) is None:
                click.echo(
                    f"Error: No {' or '.join(layout.build_files)} in {project_folder}",
                    err=True,
                )
                sys.exit(1)

            submission_obj = Submission(
                id=str(uuid.uuid4()),
                assignment_id=assignment_id,
                submitter_user_id=user_id,
                project_folder=str(project_folder),
                authors=authors or user_id,
            )
            submission_obj.set_status(SubmissionStatus.SUBMITTED)
            await repo.create_submission(submission_obj)
            await repo.save_report(
                SubmissionReport(
                    submission_id=submission_obj.id,
                    report_key=Indicator.PROJECT_STRUCTURE.code,
                    report_value="OK",
                )
            )

            click.echo("✓ Submission queued successfully")
            click.echo(f"  ID:     {submission_obj.id}")
            click.echo(f"  Folder: {submission_obj.project_folder}")

        finally:
            await repo.close()

    run_async(submit())


@submission.command("rebuild")
@click.argument("submission_id")
@click.option("--teacher", required=True, help="Teacher requesting the rebuild")
def submission_rebuild(submission_id: str, teacher: str):
    """Queue a submission to be built again."""

    async def rebuild():
        repo = get_repository()
        await repo.initialize()

        try:
            submission_obj = await repo.get_submission(submission_id)
            if not submission_obj:
                click.echo(f"Error: Submission not found: {submission_id}", err=True)
                sys.exit(1)

            if submission_obj.status is SubmissionStatus.RUNNING:
                click.echo(f"Error: Submission {submission_id} is being built", err=True)
                sys.exit(1)

            submission_obj.rebuild_principal = teacher
            submission_obj.set_status(
                SubmissionStatus.SUBMITTED_FOR_REBUILD, dont_update_status_date=True
            )
            await repo.save_submission(submission_obj)

            click.echo(f"✓ Submission {submission_id} queued for rebuild")

        finally:
            await repo.close()

    run_async(rebuild())


@submission.command("build")
@click.argument("submission_id")
def submission_build(submission_id: str):
    """Build a submission now, without going through the controller."""

    async def build():
        repo = get_repository()
        await repo.initialize()

        try:
            submission_obj = await repo.get_submission(submission_id)
            if not submission_obj:
                click.echo(f"Error: Submission not found: {submission_id}", err=True)
                sys.exit(1)

            rebuild = submission_obj.status is SubmissionStatus.SUBMITTED_FOR_REBUILD
            await BuildWorker(repo).check_project(
                submission_obj,
                principal_name=submission_obj.rebuild_principal if rebuild else None,
                rebuild_by_teacher=rebuild,
                dont_change_status_date=rebuild,
            )
            click.echo(f"Submission {submission_id}: {submission_obj.status.value}")
            if submission_obj.status is SubmissionStatus.FAILED:
                sys.exit(1)

        finally:
            await repo.close()

    run_async(build())


@submission.command("list")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([s.value for s in SubmissionStatus], case_sensitive=False),
    help="Only submissions with this status (repeatable)",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def submission_list(statuses: tuple[str, ...], json_output: bool):
    """List submissions, oldest first."""
    selected = [SubmissionStatus(s.upper()) for s in statuses] or list(SubmissionStatus)

    async def list_submissions():
        repo = get_repository()
        await repo.initialize()

        try:
            submissions = await repo.list_submissions_by_status(selected)

            if json_output:
                click.echo(json.dumps([s.to_dict() for s in submissions], indent=2))
                return

            if not submissions:
                click.echo("No submissions found.")
                return

            click.echo(f"\n{'ID':<38} {'Assignment':<20} {'Authors':<25} {'Status':<20}")
            click.echo("-" * 105)
            for s in submissions:
                click.echo(
                    f"{s.id:<38} {s.assignment_id:<20} {s.authors or '':<25} {s.status.value:<20}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_submissions())


@submission.command("report")
@click.argument("submission_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option(
    "--details",
    is_flag=True,
    help="Also show compilation errors, lint findings and failed tests from the archived build",
)
def submission_report(submission_id: str, json_output: bool, details: bool):
    """Print the report of a submission."""

    async def report():
        repo = get_repository()
        await repo.initialize()

        try:
            submission_obj = await repo.get_submission(submission_id)
            if not submission_obj:
                click.echo(f"Error: Submission not found: {submission_id}", err=True)
                sys.exit(1)

            rows = await repo.list_reports(submission_id)
            build_details = None
            if details and submission_obj.build_report_id is not None:
                build_details = await _archived_build_details(repo, submission_obj)

            if json_output:
                data = submission_obj.to_dict()
                data["indicators"] = [r.to_dict() for r in rows]
                if build_details is not None:
                    data["details"] = build_details
                click.echo(json.dumps(data, indent=2))
                return

            click.echo(f"Submission {submission_obj.id} ({submission_obj.status.value})")
            if not rows:
                click.echo("No indicators.")
            for row in rows:
                indicator = row.indicator
                label = indicator.description if indicator else row.report_key
                line = f"  {row.report_key:<3} {label:<30} {row.report_value}"
                if row.report_progress is not None and row.report_goal is not None:
                    line += f" ({row.report_progress}/{row.report_goal})"
                click.echo(line)

            if build_details:
                for title, key in (
                    ("Compilation errors", "compilation_errors"),
                    ("Code quality", "checkstyle_errors"),
                    ("Teacher test failures", "teacher_test_errors"),
                    ("Student test failures", "student_test_errors"),
                ):
                    if build_details[key]:
                        click.echo(f"\n{title}:")
                        entries = build_details[key]
                        for entry in entries if isinstance(entries, list) else [entries]:
                            click.echo(f"  {entry}")
                if build_details["coverage"] is not None:
                    click.echo(f"\nStudent tests coverage: {build_details['coverage']}%")

        finally:
            await repo.close()

    run_async(report())


async def _archived_build_details(repo: SQLiteSubmissionRepository, submission_obj: Submission) -> dict:
    """Rebuild the BuildReport of the last build from its archived artifacts."""
    assignment_obj = await repo.get_assignment(submission_obj.assignment_id)
    build_output = await repo.get_build_output(submission_obj.build_report_id)
    if assignment_obj is None or build_output is None:
        return {}

    build_report = BuildReportBuilder().build(
        build_output.build_report.split("\n"),
        submission_obj.project_folder,
        assignment_obj,
        assignment_test_methods=await repo.list_assignment_test_methods(assignment_obj.id),
        junit_reports=await repo.list_junit_reports(submission_obj.id),
        jacoco_reports=await repo.list_jacoco_reports(submission_obj.id),
    )
    return {
        "compilation_errors": build_report.compilation_errors(),
        "checkstyle_errors": build_report.checkstyle_errors(),
        "teacher_test_errors": build_report.junit_errors(TestType.TEACHER),
        "student_test_errors": build_report.junit_errors(TestType.STUDENT)
        if assignment_obj.accepts_student_tests
        else None,
        "coverage": build_report.coverage_percentage(),
    }


if __name__ == "__main__":
    cli()
