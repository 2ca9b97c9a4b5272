"""
End-to-end tests for the admin CLI.

Tests the admin CLI commands for managing assignments and submissions
against a real SQLite database.
"""

import asyncio
import json
import os
import re
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from conftest import FIXTURES_DIR, PROJECT_FOLDER, load_fixture, load_log
from dp_common.models import (
    Assignment,
    BuildOutput,
    JacocoReport,
    JUnitReport,
    Submission,
    SubmissionReport,
    SubmissionStatus,
)
from dp_persistence.sqlite_repository import SQLiteSubmissionRepository

REPO_ROOT = Path(__file__).resolve().parents[2]


def with_repository(db_path, action):
    """Run an async action against the test database."""

    async def run():
        repo = SQLiteSubmissionRepository(db_path)
        await repo.initialize()
        try:
            return await action(repo)
        finally:
            await repo.close()

    return asyncio.run(run())


@pytest.fixture
def test_db_path():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db", prefix="dp_admin_test_")
    os.close(fd)

    # Initialize the database
    async def noop(repo):
        return None

    with_repository(path, noop)

    yield path

    # Clean up test database after test
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def maven_project(tmp_path):
    """A submitted project folder with a Maven build file."""
    project = tmp_path / "project"
    (project / "src" / "main" / "java").mkdir(parents=True)
    (project / "pom.xml").write_text("<project/>\n", encoding="utf-8")
    return project


def run_admin_command(*args, db_path, env=None):
    """Helper to run dp-admin commands."""
    cmd_env = os.environ.copy()
    if env:
        cmd_env.update(env)
    cmd_env["DP_DB_PATH"] = db_path
    cmd_env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(REPO_ROOT), cmd_env.get("PYTHONPATH")) if p
    )

    return subprocess.run(
        [sys.executable, "-m", "dp_admin.cli", *args],
        capture_output=True,
        text=True,
        env=cmd_env,
    )


def create_assignment(db_path, assignment_id="sampleJavaProject", *extra):
    result = run_admin_command("assignment", "create", assignment_id, *extra, db_path=db_path)
    assert result.returncode == 0, result.stderr
    return result


def submit(db_path, folder, assignment_id="sampleJavaProject", user="student1"):
    result = run_admin_command(
        "submission", "submit", assignment_id, str(folder), "--user", user, db_path=db_path
    )
    assert result.returncode == 0, result.stderr
    match = re.search(r"ID:\s+([a-f0-9\-]{36})", result.stdout)
    assert match is not None
    return match.group(1)


class TestAssignmentManagement:
    """Test suite for assignment commands."""

    def test_create_assignment(self, test_db_path):
        """Test creating an assignment with declared test methods."""
        result = create_assignment(
            test_db_path,
            "sampleJavaProject",
            "--name", "Sample Java Project",
            "--package", "org.dropProject.samples",
            "--test-method", "TestTeacherProject:testSum",
            "--test-method", "TestTeacherProject:testAverage",
        )

        assert "saved successfully" in result.stdout.lower()
        assert "sampleJavaProject" in result.stdout
        assert "Declared test methods: 2" in result.stdout

    def test_list_assignments_json(self, test_db_path):
        """Test listing assignments as JSON."""
        create_assignment(
            test_db_path,
            "kotlinProject",
            "--language", "kotlin",
            "--compiler", "gradle",
            "--accepts-student-tests",
            "--min-student-tests", "2",
            "--hidden-visibility", "show_progress",
        )
        create_assignment(test_db_path, "javaProject")

        result = run_admin_command("assignment", "list", "--json", db_path=test_db_path)

        assert result.returncode == 0
        assignments = json.loads(result.stdout)
        assert [a["id"] for a in assignments] == ["javaProject", "kotlinProject"]
        kotlin = assignments[1]
        assert kotlin["language"] == "KOTLIN"
        assert kotlin["compiler"] == "GRADLE"
        assert kotlin["accepts_student_tests"] is True
        assert kotlin["min_student_tests"] == 2
        assert kotlin["hidden_tests_visibility"] == "SHOW_PROGRESS"

    def test_list_assignments_empty(self, test_db_path):
        """Test listing when there are no assignments."""
        result = run_admin_command("assignment", "list", db_path=test_db_path)

        assert result.returncode == 0
        assert "No assignments found" in result.stdout

    def test_min_student_tests_requires_student_tests(self, test_db_path):
        """Test that a minimum without student tests is rejected."""
        result = run_admin_command(
            "assignment", "create", "a1", "--min-student-tests", "3", db_path=test_db_path
        )

        assert result.returncode == 1
        assert "--accepts-student-tests" in result.stderr

    def test_invalid_test_method(self, test_db_path):
        """Test that a test method without a class is rejected."""
        result = run_admin_command(
            "assignment", "create", "a1", "--test-method", "testSum", db_path=test_db_path
        )

        assert result.returncode != 0


class TestSubmissionManagement:
    """Test suite for submission commands."""

    def test_submit(self, test_db_path, maven_project):
        """Test queuing a submission."""
        create_assignment(test_db_path)

        submission_id = submit(test_db_path, maven_project)

        result = run_admin_command(
            "submission", "list", "--status", "submitted", "--json", db_path=test_db_path
        )
        assert result.returncode == 0
        submissions = json.loads(result.stdout)
        assert len(submissions) == 1
        assert submissions[0]["id"] == submission_id
        assert submissions[0]["authors"] == "student1"
        assert submissions[0]["status"] == "SUBMITTED"

    def test_submit_unknown_assignment(self, test_db_path, maven_project):
        """Test submitting to an assignment that doesn't exist."""
        result = run_admin_command(
            "submission", "submit", "ghost", str(maven_project), "--user", "student1",
            db_path=test_db_path,
        )

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_submit_without_build_file(self, test_db_path, tmp_path):
        """Test that a folder without a build file is refused."""
        create_assignment(test_db_path)
        empty = tmp_path / "empty"
        empty.mkdir()

        result = run_admin_command(
            "submission", "submit", "sampleJavaProject", str(empty), "--user", "student1",
            db_path=test_db_path,
        )

        assert result.returncode == 1
        assert "pom.xml" in result.stderr

    def test_report_json(self, test_db_path, maven_project):
        """Test that a queued submission reports its project structure."""
        create_assignment(test_db_path)
        submission_id = submit(test_db_path, maven_project)

        result = run_admin_command(
            "submission", "report", submission_id, "--json", db_path=test_db_path
        )

        assert result.returncode == 0
        data = json.loads(result.stdout)
        assert data["id"] == submission_id
        assert data["status"] == "SUBMITTED"
        assert data["indicators"] == [
            {"key": "PS", "label": "Project Structure", "value": "OK"}
        ]

    def test_report_unknown_submission(self, test_db_path):
        """Test the report of a submission that doesn't exist."""
        result = run_admin_command("submission", "report", "ghost", db_path=test_db_path)

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_rebuild(self, test_db_path, maven_project):
        """Test queuing a submission for rebuild."""
        create_assignment(test_db_path)
        submission_id = submit(test_db_path, maven_project)

        result = run_admin_command(
            "submission", "rebuild", submission_id, "--teacher", "teacher1",
            db_path=test_db_path,
        )

        assert result.returncode == 0
        assert "queued for rebuild" in result.stdout

        listed = run_admin_command(
            "submission", "list", "--status", "submitted_for_rebuild", "--json",
            db_path=test_db_path,
        )
        submissions = json.loads(listed.stdout)
        assert [s["id"] for s in submissions] == [submission_id]

    def test_rebuild_unknown_submission(self, test_db_path):
        """Test rebuilding a submission that doesn't exist."""
        result = run_admin_command(
            "submission", "rebuild", "ghost", "--teacher", "teacher1", db_path=test_db_path
        )

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_list_empty(self, test_db_path):
        """Test listing when there are no submissions."""
        result = run_admin_command("submission", "list", db_path=test_db_path)

        assert result.returncode == 0
        assert "No submissions found" in result.stdout


TEACHER_REPORT = "TEST-org.dropProject.samples.TestTeacherProject.xml"


def seed_built_submission(db_path, log_name):
    """Store a submission as if it had been built, with archived artifacts."""

    async def seed(repo):
        await repo.save_assignment(
            Assignment(
                id="sampleJavaProject",
                package_name="org.dropProject.samples",
                accepts_student_tests=True,
            )
        )
        output_id = await repo.save_build_output(
            BuildOutput(build_report="\n".join(load_log(log_name)))
        )
        await repo.create_submission(
            Submission(
                id="sub-42",
                assignment_id="sampleJavaProject",
                submitter_user_id="student1",
                project_folder=PROJECT_FOLDER,
                status=SubmissionStatus.VALIDATED,
                build_report_id=output_id,
            )
        )
        await repo.save_report(SubmissionReport("sub-42", "PS", "OK"))
        await repo.save_report(SubmissionReport("sub-42", "C", "NOK"))
        await repo.save_junit_report(
            JUnitReport("sub-42", TEACHER_REPORT, load_fixture(f"surefire/{TEACHER_REPORT}"))
        )
        await repo.save_jacoco_report(
            JacocoReport("sub-42", "jacoco.csv", load_fixture("jacoco/jacoco.csv"))
        )

    with_repository(db_path, seed)


class TestReportDetails:
    """Test suite for reports rebuilt from archived build artifacts."""

    def test_details_json(self, test_db_path):
        """Test that details come from the archived output, XML and CSV."""
        seed_built_submission(test_db_path, "maven/java_compilation_errors.log")

        result = run_admin_command(
            "submission", "report", "sub-42", "--json", "--details", db_path=test_db_path
        )

        assert result.returncode == 0, result.stderr
        data = json.loads(result.stdout)
        assert [row["key"] for row in data["indicators"]] == ["PS", "C"]

        details = data["details"]
        assert details["compilation_errors"] == [
            "org/dropProject/samples/Main.java:[3,8] class, interface, or enum expected",
            "[TEST] org/dropProject/samples/TestStudent.java:[10,5] cannot find symbol",
            "  symbol:   method sumAll(int[])",
            "  location: class org.dropProject.samples.Main",
        ]
        assert details["checkstyle_errors"] == []
        assert "TestTeacherProject.testAverage" in details["teacher_test_errors"]
        assert details["student_test_errors"] is None
        assert details["coverage"] == 60

    def test_details_text(self, test_db_path):
        """Test the human-readable rendering of the details."""
        seed_built_submission(test_db_path, "maven/java_compilation_errors.log")

        result = run_admin_command("submission", "report", "sub-42", "--details", db_path=test_db_path)

        assert result.returncode == 0, result.stderr
        assert "Submission sub-42 (VALIDATED)" in result.stdout
        assert "Compilation errors:" in result.stdout
        assert "class, interface, or enum expected" in result.stdout
        assert "Teacher test failures:" in result.stdout
        assert "Student tests coverage: 60%" in result.stdout

    def test_report_without_details_has_no_details_key(self, test_db_path):
        """Test that archived artifacts are only read on request."""
        seed_built_submission(test_db_path, "maven/java_compilation_errors.log")

        result = run_admin_command("submission", "report", "sub-42", "--json", db_path=test_db_path)

        assert result.returncode == 0
        assert "details" not in json.loads(result.stdout)


@pytest.fixture
def stub_maven(tmp_path):
    """
    Install a fake mvn that prints a captured log and drops test reports.

    Returns a function taking the log fixture name, the project folder the
    log refers to, and the surefire fixtures to copy; it returns the env
    pointing DP_MAVEN_HOME at the fake installation.
    """

    def install(log_name, project_folder, reports=()):
        maven_home = tmp_path / "maven"
        (maven_home / "bin").mkdir(parents=True, exist_ok=True)
        log_file = tmp_path / "mvn-output.log"
        log_file.write_text(
            "\n".join(load_log(log_name, str(project_folder))) + "\n", encoding="utf-8"
        )

        lines = ["#!/bin/sh", "mkdir -p target/surefire-reports"]
        for report in reports:
            lines.append(f"cp '{FIXTURES_DIR / 'surefire' / report}' target/surefire-reports/")
        lines.append(f"cat '{log_file}'")

        mvn = maven_home / "bin" / "mvn"
        mvn.write_text("\n".join(lines) + "\n", encoding="utf-8")
        mvn.chmod(0o755)

        return {
            "DP_MAVEN_HOME": str(maven_home),
            "DP_MAVEN_REPOSITORY": str(tmp_path / "m2"),
            "DP_BUILD_TIMEOUT": "60",
        }

    return install


@pytest.mark.skipif(sys.platform == "win32", reason="fake mvn is a shell script")
class TestBuildCommands:
    """Test suite for commands that invoke the build tool."""

    def test_submission_build(self, test_db_path, maven_project, stub_maven):
        """Test building a queued submission and reading its report."""
        create_assignment(test_db_path)
        submission_id = submit(test_db_path, maven_project)
        env = stub_maven("maven/success.log", maven_project, [TEACHER_REPORT])

        result = run_admin_command("submission", "build", submission_id, db_path=test_db_path, env=env)

        assert result.returncode == 0, result.stderr
        assert f"Submission {submission_id}: VALIDATED" in result.stdout

        report = run_admin_command(
            "submission", "report", submission_id, "--json", db_path=test_db_path
        )
        data = json.loads(report.stdout)
        assert data["status"] == "VALIDATED"
        assert data["build_report_id"] is not None
        assert data["indicators"] == [
            {"key": "PS", "label": "Project Structure", "value": "OK"},
            {"key": "C", "label": "Compilation", "value": "OK"},
            {"key": "TT", "label": "Teacher Unit Tests", "value": "NOK", "progress": 2, "goal": 3},
        ]

    def test_submission_build_with_compilation_errors(
        self, test_db_path, maven_project, stub_maven
    ):
        """Test that compilation errors are recorded and shown in the details."""
        create_assignment(test_db_path)
        submission_id = submit(test_db_path, maven_project)
        env = stub_maven("maven/java_compilation_errors.log", maven_project)

        result = run_admin_command("submission", "build", submission_id, db_path=test_db_path, env=env)

        assert result.returncode == 0, result.stderr

        report = run_admin_command(
            "submission", "report", submission_id, "--json", "--details", db_path=test_db_path
        )
        data = json.loads(report.stdout)
        assert [(row["key"], row["value"]) for row in data["indicators"]] == [
            ("PS", "OK"),
            ("C", "NOK"),
        ]
        assert data["details"]["compilation_errors"][0] == (
            "org/dropProject/samples/Main.java:[3,8] class, interface, or enum expected"
        )

    def test_submission_build_unknown(self, test_db_path):
        """Test building a submission that doesn't exist."""
        result = run_admin_command("submission", "build", "ghost", db_path=test_db_path)

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()

    def test_assignment_check(self, test_db_path, maven_project, stub_maven):
        """Test that checking an assignment records its teacher test methods."""
        create_assignment(test_db_path, "sampleJavaProject", "--hidden-visibility", "SHOW_PROGRESS")
        env = stub_maven(
            "maven/success.log",
            maven_project,
            [TEACHER_REPORT, "TEST-org.dropProject.samples.TestTeacherHiddenProject.xml"],
        )

        result = run_admin_command(
            "assignment", "check", "sampleJavaProject", str(maven_project),
            db_path=test_db_path, env=env,
        )

        assert result.returncode == 0, result.stderr
        assert "TEACHER: Tests run: 3, Failures: 1, Errors: 0" in result.stdout
        assert "HIDDEN: Tests run: 2, Failures: 0, Errors: 1" in result.stdout
        assert "Found 5 teacher test methods" in result.stdout

        async def declared(repo):
            return await repo.list_assignment_test_methods("sampleJavaProject")

        methods = with_repository(test_db_path, declared)
        assert sorted((m.test_class, m.test_method) for m in methods) == [
            ("TestTeacherHiddenProject", "testHiddenEmptyArray"),
            ("TestTeacherHiddenProject", "testHiddenNull"),
            ("TestTeacherProject", "testAverage"),
            ("TestTeacherProject", "testMax_MANDATORY"),
            ("TestTeacherProject", "testSum"),
        ]

    def test_assignment_check_with_compilation_errors(
        self, test_db_path, maven_project, stub_maven
    ):
        """Test that a reference project that doesn't compile fails the check."""
        create_assignment(test_db_path)
        env = stub_maven("maven/java_compilation_errors.log", maven_project)

        result = run_admin_command(
            "assignment", "check", "sampleJavaProject", str(maven_project),
            db_path=test_db_path, env=env,
        )

        assert result.returncode == 1
        assert "Compilation errors:" in result.stdout
        assert "class, interface, or enum expected" in result.stdout

    def test_assignment_check_unknown(self, test_db_path, maven_project):
        """Test checking an assignment that doesn't exist."""
        result = run_admin_command(
            "assignment", "check", "ghost", str(maven_project), db_path=test_db_path
        )

        assert result.returncode == 1
        assert "not found" in result.stderr.lower()
