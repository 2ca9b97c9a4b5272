"""
Unit tests for the repository layer.

Tests the SQLite implementation to ensure assignments, submissions,
indicator rows and archived build artifacts persist correctly.
"""

import os
import tempfile
from datetime import UTC, datetime

import pytest

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
from dp_persistence.sqlite_repository import SQLiteSubmissionRepository


@pytest.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteSubmissionRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


async def add_submission(repo, submission_id="sub-1", **kwargs):
    await repo.save_assignment(Assignment(id="sampleJavaProject"))
    submission = Submission(
        id=submission_id,
        assignment_id="sampleJavaProject",
        submitter_user_id="student1",
        project_folder=f"/tmp/{submission_id}",
        **kwargs,
    )
    await repo.create_submission(submission)
    return submission


@pytest.mark.asyncio
async def test_save_and_get_assignment(temp_db):
    """Test that every assignment field round-trips through the database."""
    assignment = Assignment(
        id="kotlinProject",
        name="Kotlin project",
        language=Language.KOTLIN,
        compiler=Compiler.GRADLE,
        package_name="org.dropproject.samples",
        accepts_student_tests=True,
        min_student_tests=2,
        calculate_student_tests_coverage=True,
        hidden_tests_visibility=TestVisibility.SHOW_PROGRESS,
        mandatory_tests_suffix="_MANDATORY",
        max_memory_mb=512,
    )

    await temp_db.save_assignment(assignment)

    assert await temp_db.get_assignment("kotlinProject") == assignment


@pytest.mark.asyncio
async def test_get_nonexistent_assignment(temp_db):
    """Test retrieving an assignment that doesn't exist."""
    assert await temp_db.get_assignment("nope") is None


@pytest.mark.asyncio
async def test_save_assignment_replaces_values_but_keeps_test_methods(temp_db):
    """Test that saving an existing assignment updates it in place."""
    await temp_db.save_assignment(Assignment(id="a1", name="First"))
    await temp_db.save_assignment_test_methods(
        "a1", [AssignmentTestMethod("TestTeacherProject", "testSum")]
    )

    await temp_db.save_assignment(Assignment(id="a1", name="Renamed", min_student_tests=3))

    retrieved = await temp_db.get_assignment("a1")
    assert retrieved.name == "Renamed"
    assert retrieved.min_student_tests == 3
    assert len(await temp_db.list_assignments()) == 1
    assert await temp_db.list_assignment_test_methods("a1") == [
        AssignmentTestMethod("TestTeacherProject", "testSum")
    ]


@pytest.mark.asyncio
async def test_assignment_test_methods_keep_order_and_are_replaced(temp_db):
    """Test that the test method catalogue is replaced as a whole."""
    await temp_db.save_assignment(Assignment(id="a1"))
    await temp_db.save_assignment_test_methods(
        "a1",
        [
            AssignmentTestMethod("TestTeacherProject", "testSum"),
            AssignmentTestMethod("TestTeacherProject", "testAverage"),
            AssignmentTestMethod("TestTeacherHiddenProject", "testHiddenNull"),
        ],
    )

    methods = await temp_db.list_assignment_test_methods("a1")
    assert [m.test_method for m in methods] == ["testSum", "testAverage", "testHiddenNull"]

    await temp_db.save_assignment_test_methods(
        "a1", [AssignmentTestMethod("TestTeacherProject", "testMax")]
    )

    assert await temp_db.list_assignment_test_methods("a1") == [
        AssignmentTestMethod("TestTeacherProject", "testMax")
    ]


@pytest.mark.asyncio
async def test_create_and_get_submission(temp_db):
    """Test creating a submission and retrieving it."""
    await add_submission(temp_db, authors="a21700001,a21700002")

    retrieved = await temp_db.get_submission("sub-1")

    assert retrieved is not None
    assert retrieved.submitter_user_id == "student1"
    assert retrieved.project_folder == "/tmp/sub-1"
    assert retrieved.status == SubmissionStatus.SUBMITTED
    assert retrieved.status_date is None
    assert retrieved.authors == "a21700001,a21700002"
    assert retrieved.build_report_id is None
    assert retrieved.rebuild_principal is None


@pytest.mark.asyncio
async def test_get_nonexistent_submission(temp_db):
    """Test retrieving a submission that doesn't exist."""
    assert await temp_db.get_submission("nonexistent") is None


@pytest.mark.asyncio
async def test_save_submission(temp_db):
    """Test updating status, build output and rebuild principal."""
    submission = await add_submission(temp_db)
    output_id = await temp_db.save_build_output(BuildOutput(build_report="[INFO] BUILD SUCCESS"))

    submission.set_status(SubmissionStatus.VALIDATED_REBUILT)
    submission.build_report_id = output_id
    submission.rebuild_principal = "teacher1"
    await temp_db.save_submission(submission)

    retrieved = await temp_db.get_submission("sub-1")
    assert retrieved.status == SubmissionStatus.VALIDATED_REBUILT
    assert retrieved.status_date == submission.status_date
    assert retrieved.build_report_id == output_id
    assert retrieved.rebuild_principal == "teacher1"


@pytest.mark.asyncio
async def test_save_nonexistent_submission(temp_db):
    """Test that updating an unknown submission raises KeyError."""
    submission = Submission(
        id="ghost",
        assignment_id="sampleJavaProject",
        submitter_user_id="student1",
        project_folder="/tmp/ghost",
    )

    with pytest.raises(KeyError):
        await temp_db.save_submission(submission)


@pytest.mark.asyncio
async def test_list_submissions_by_status(temp_db):
    """Test filtering submissions by status, oldest first."""
    await add_submission(
        temp_db, "sub-new", submission_date=datetime(2024, 3, 2, tzinfo=UTC)
    )
    await add_submission(
        temp_db, "sub-old", submission_date=datetime(2024, 3, 1, tzinfo=UTC)
    )
    await add_submission(temp_db, "sub-done", status=SubmissionStatus.VALIDATED)
    await add_submission(
        temp_db, "sub-rebuild", status=SubmissionStatus.SUBMITTED_FOR_REBUILD
    )

    pending = await temp_db.list_submissions_by_status([SubmissionStatus.SUBMITTED])
    assert [s.id for s in pending] == ["sub-old", "sub-new"]

    either = await temp_db.list_submissions_by_status(
        [SubmissionStatus.SUBMITTED, SubmissionStatus.SUBMITTED_FOR_REBUILD]
    )
    assert {s.id for s in either} == {"sub-old", "sub-new", "sub-rebuild"}

    assert await temp_db.list_submissions_by_status([]) == []


@pytest.mark.asyncio
async def test_reports_in_insertion_order(temp_db):
    """Test saving and listing indicator rows."""
    await add_submission(temp_db)
    await temp_db.save_report(SubmissionReport("sub-1", "PS", "OK"))
    await temp_db.save_report(SubmissionReport("sub-1", "C", "OK"))
    await temp_db.save_report(
        SubmissionReport("sub-1", "TT", "NOK", report_progress=2, report_goal=3)
    )

    reports = await temp_db.list_reports("sub-1")

    assert [r.report_key for r in reports] == ["PS", "C", "TT"]
    assert reports[2].report_progress == 2
    assert reports[2].report_goal == 3
    assert reports[0].report_progress is None
    assert all(r.id is not None for r in reports)


@pytest.mark.asyncio
async def test_delete_reports_except(temp_db):
    """Test that only the kept indicator survives."""
    await add_submission(temp_db)
    for key in ("PS", "C", "CS", "ST"):
        await temp_db.save_report(SubmissionReport("sub-1", key, "OK"))

    await temp_db.delete_reports_except("sub-1", Indicator.PROJECT_STRUCTURE)

    reports = await temp_db.list_reports("sub-1")
    assert [r.report_key for r in reports] == ["PS"]


@pytest.mark.asyncio
async def test_build_output(temp_db):
    """Test archiving and retrieving raw build output."""
    output = BuildOutput(build_report="line 1\nline 2")

    output_id = await temp_db.save_build_output(output)

    assert output.id == output_id
    retrieved = await temp_db.get_build_output(output_id)
    assert retrieved.build_report == "line 1\nline 2"
    assert retrieved.created_at == output.created_at
    assert await temp_db.get_build_output(output_id + 100) is None


@pytest.mark.asyncio
async def test_junit_reports(temp_db):
    """Test archiving, listing and deleting test result files."""
    await add_submission(temp_db)
    await temp_db.save_junit_report(JUnitReport("sub-1", "TEST-TestStudent.xml", "<b/>"))
    await temp_db.save_junit_report(JUnitReport("sub-1", "TEST-TestAlpha.xml", "<a/>"))

    reports = await temp_db.list_junit_reports("sub-1")
    assert [r.file_name for r in reports] == ["TEST-TestAlpha.xml", "TEST-TestStudent.xml"]
    assert reports[0].xml_report == "<a/>"

    await temp_db.delete_junit_reports("sub-1")
    assert await temp_db.list_junit_reports("sub-1") == []


@pytest.mark.asyncio
async def test_jacoco_reports(temp_db):
    """Test archiving, listing and deleting coverage files."""
    await add_submission(temp_db)
    await temp_db.save_jacoco_report(JacocoReport("sub-1", "jacoco.csv", "GROUP,PACKAGE"))

    reports = await temp_db.list_jacoco_reports("sub-1")
    assert len(reports) == 1
    assert reports[0].csv_report == "GROUP,PACKAGE"

    await temp_db.delete_jacoco_reports("sub-1")
    assert await temp_db.list_jacoco_reports("sub-1") == []


@pytest.mark.asyncio
async def test_persistence_across_connections():
    """Test that data persists after closing and reopening the database."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    try:
        repo = SQLiteSubmissionRepository(db_path)
        await repo.initialize()
        await add_submission(repo, status=SubmissionStatus.RUNNING)
        await repo.save_report(SubmissionReport("sub-1", "PS", "OK"))
        await repo.close()

        new_repo = SQLiteSubmissionRepository(db_path)
        await new_repo.initialize()
        try:
            retrieved = await new_repo.get_submission("sub-1")
            assert retrieved.status == SubmissionStatus.RUNNING
            assert [r.report_key for r in await new_repo.list_reports("sub-1")] == ["PS"]
        finally:
            await new_repo.close()
    finally:
        if os.path.exists(db_path):
            os.unlink(db_path)
