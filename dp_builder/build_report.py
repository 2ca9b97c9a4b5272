"""
Build report: what a build-tool invocation says about a submission.

A BuildReport is an immutable view over the captured output lines, the
per-class test results and the coverage results of one build. Everything it
exposes (compilation errors, lint findings, per-category test summaries) is
computed on demand from those inputs and has no side effects.

The marker strings below are matched against Maven and Gradle console
output; a change in the tools' output format is a breaking change here.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from pathlib import Path

from dp_common.exceptions import InvariantViolationError
from dp_common.models import (
    Assignment,
    AssignmentTestMethod,
    Compiler,
    JacocoReport,
    JUnitReport,
    Language,
)

from .jacoco import JacocoReportReader, JacocoResults
from .junit import JUnitMethodResult, JUnitMethodResultType, JUnitReportReader, JUnitResults
from .layout import ProjectLayout

logger = logging.getLogger(__name__)

# Maven markers
MAVEN_JAVA_COMPILATION_START = re.compile(r"\[ERROR\] COMPILATION ERROR :.*")
MAVEN_KOTLIN_COMPILATION_START = re.compile(
    r"\[INFO\] --- kotlin-maven-plugin:\d+\.\d+\.\d+:compile.*"
)
MAVEN_KOTLIN_TEST_COMPILATION_START = re.compile(
    r"\[ERROR\] Failed to execute goal org\.jetbrains\.kotlin:kotlin-maven-plugin.*test-compile.*"
)
MAVEN_BUILD_FAILURE = "[INFO] BUILD FAILURE"
MAVEN_NEXT_STEP = "[INFO] --- "
MAVEN_HELP_MARKER = "[ERROR] -> [Help 1]"
MAVEN_FAILED_GOAL = "[ERROR] Failed to execute goal"
MAVEN_BENIGN_FAILED_GOALS = (
    "[ERROR] Failed to execute goal org.apache.maven.plugins:maven-surefire-plugin",
    "[ERROR] Failed to execute goal org.apache.maven.plugins:maven-compiler-plugin",
    "[ERROR] Failed to execute goal org.jetbrains.kotlin:kotlin-maven-plugin",
)
MAVEN_CHECKSTYLE_START = "[INFO] Starting audit..."
MAVEN_CHECKSTYLE_END = "Audit done."
MAVEN_DETEKT_START = "[INFO] --- detekt-maven-plugin"
MAVEN_FORKED_VM_CRASH = "The forked VM terminated without properly saying goodbye."
PMD_FAILURE = "[INFO] PMD Failure:"

# Gradle markers (console=plain)
GRADLE_TASK_BANNER = "> Task :"
GRADLE_COMPILATION_START = re.compile(
    r"> Task :(?:[\w-]+:)*compile(?:Debug|Release)?(?:Java|Kotlin)(?:WithJavac)?(?: FAILED)?"
)
GRADLE_TEST_COMPILATION_START = re.compile(
    r"> Task :(?:[\w-]+:)*compile(?:Debug|Release)?(?:UnitTest|Test)(?:Java|Kotlin)(?:WithJavac)?(?: FAILED)?"
)
GRADLE_SECTION_END = ("> Task :", "FAILURE: Build", "BUILD FAILED", "BUILD SUCCESSFUL")
GRADLE_CHECKSTYLE_START = re.compile(r"> Task :(?:[\w-]+:)*checkstyleMain\b.*")
GRADLE_CHECKSTYLE_WARNING = "[ant:checkstyle] [WARN] "
GRADLE_DETEKT_START = re.compile(r"> Task :(?:[\w-]+:)*detekt\b.*")
GRADLE_FAILED_TASK = re.compile(r"Execution failed for task '([^']+)'")
GRADLE_WHAT_WENT_WRONG = "* What went wrong:"
GRADLE_TEST_EXECUTOR_CRASH = re.compile(
    r"Process 'Gradle Test Executor \d+' finished with non-zero exit value"
)
GRADLE_BENIGN_TASKS = ("checkstyleMain", "checkstyleTest", "detekt", "jacocoTestReport")

FORCED_EXIT_MESSAGES = {
    Language.JAVA: "Invalid call to System.exit(). Please remove this instruction",
    Language.KOTLIN: "Invalid call to System.exit() or exitProcess(). Please remove this instruction",
    Language.ANDROID: "Invalid call to System.exit() or exitProcess(). Please remove this instruction",
}

_CAPITALIZATION_RULE = (
    "deve começar por letra minúscula. Caso o nome tenha mais do que uma palavra, "
    "as palavras seguintes devem ser capitalizadas (iniciadas por uma maiúscula)"
)

# detekt rule id -> explanation shown to students
DETEKT_TRANSLATIONS = {
    "VariableNaming": f"Nome da variável {_CAPITALIZATION_RULE}",
    "FunctionNaming": f"Nome da função {_CAPITALIZATION_RULE}",
    "FunctionParameterNaming": f"Nome do parâmetro de função {_CAPITALIZATION_RULE}",
    "VariableMinLength": "Nome da variável demasiado pequeno",
    "VarCouldBeVal": "Variável imutável declarada com var",
    "MandatoryBracesIfStatements": "Instrução 'if' sem chaveta",
    "ComplexCondition": "Condição demasiado complexa",
    "StringLiteralDuplication": "String duplicada. Deve ser usada uma constante",
    "NestedBlockDepth": "Demasiados níveis de blocos dentro de blocos",
    "UnsafeCallOnNullableType": "Não é permitido usar o !! pois pode causar crashes",
    "MaxLineLength": "Linha demasiado comprida",
    "LongMethod": "Função com demasiadas linhas de código",
    "ForbiddenKeywords": "Utilização de instruções proibidas",
}


class TestType(str, Enum):
    """
    Test categories:
    - STUDENT: tests written by the students for their own code
    - TEACHER: teacher tests whose detailed results students always see
    - HIDDEN: teacher tests shown according to the assignment's visibility policy
    """

    __test__ = False  # not a pytest test class

    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    HIDDEN = "HIDDEN"


@dataclass(frozen=True)
class JUnitSummary:
    """Totals over every test class of one category."""

    num_tests: int
    num_failures: int
    num_errors: int
    num_skipped: int
    elapsed: float
    num_mandatory_ok: int  # Passed tests whose name ends with the mandatory suffix

    @property
    def progress(self) -> int:
        """Number of tests that passed."""
        return self.num_tests - self.num_failures - self.num_errors


@dataclass(frozen=True)
class BuildReport:
    """
    Derived view of one build of one submission (or of the assignment itself).

    Attributes:
        output_lines: Captured build-tool output, one entry per line
        project_folder: Absolute path of the built project
        assignment: Assignment the project targets
        junit_results: Per-class test results
        jacoco_results: Coverage results
        assignment_test_methods: Test methods the assignment declares
    """

    output_lines: tuple[str, ...]
    project_folder: str
    assignment: Assignment
    junit_results: tuple[JUnitResults, ...] = field(default_factory=tuple)
    jacoco_results: tuple[JacocoResults, ...] = field(default_factory=tuple)
    assignment_test_methods: tuple[AssignmentTestMethod, ...] = field(default_factory=tuple)

    @property
    def _source_folder(self) -> str:
        return self.assignment.language.source_folder

    @property
    def _main_source_prefix(self) -> str:
        return f"{self.project_folder}/src/main/{self._source_folder}/"

    @property
    def _test_source_prefix(self) -> str:
        return f"{self.project_folder}/src/test/{self._source_folder}/"

    def get_output(self) -> str:
        return "\n".join(self.output_lines)

    # Tests

    def _results_of(self, test_type: TestType) -> list[JUnitResults]:
        if test_type is TestType.TEACHER:
            return [r for r in self.junit_results if r.is_teacher_public(self.assignment)]
        if test_type is TestType.STUDENT:
            return [r for r in self.junit_results if r.is_student(self.assignment)]
        return [r for r in self.junit_results if r.is_teacher_hidden()]

    def junit_summary_as_object(
        self, test_type: TestType = TestType.TEACHER
    ) -> JUnitSummary | None:
        """
        Totals over every test class of a category.

        Args:
            test_type: Category to summarize

        Returns:
            JUnitSummary, or None if no test class of this category ran
        """
        results = self._results_of(test_type)
        if not results:
            return None

        suffix = self.assignment.mandatory_tests_suffix
        mandatory_ok = 0
        if suffix:
            mandatory_ok = sum(
                1
                for result in results
                for method in result.junit_method_results
                if method.full_method_name.endswith(suffix)
                and method.type is JUnitMethodResultType.SUCCESS
            )

        return JUnitSummary(
            num_tests=sum(r.num_tests for r in results),
            num_failures=sum(r.num_failures for r in results),
            num_errors=sum(r.num_errors for r in results),
            num_skipped=sum(r.num_skipped for r in results),
            elapsed=sum(r.time_elapsed for r in results),
            num_mandatory_ok=mandatory_ok,
        )

    def junit_summary(self, test_type: TestType = TestType.TEACHER) -> str | None:
        summary = self.junit_summary_as_object(test_type)
        if summary is None:
            return None
        return (
            f"Tests run: {summary.num_tests}, Failures: {summary.num_failures}, "
            f"Errors: {summary.num_errors}, Time elapsed: {summary.elapsed:.3f} sec"
        )

    def elapsed_time_junit(self) -> Decimal | None:
        """Time spent in teacher tests, public and hidden, or None if neither ran."""
        summaries = [
            s
            for s in (
                self.junit_summary_as_object(TestType.TEACHER),
                self.junit_summary_as_object(TestType.HIDDEN),
            )
            if s is not None
        ]
        if not summaries:
            return None
        return sum((Decimal(str(s.elapsed)) for s in summaries), Decimal(0))

    def has_junit_errors(self, test_type: TestType = TestType.TEACHER) -> bool | None:
        """True if any test of the category failed, None if the category didn't run."""
        summary = self.junit_summary_as_object(test_type)
        if summary is None:
            return None
        return summary.num_errors > 0 or summary.num_failures > 0

    def junit_errors(self, test_type: TestType = TestType.TEACHER) -> str | None:
        """Failure and error details of a category, or None if every test passed."""
        package_name = self.assignment.package_name or ""
        details = [
            method.describe(package_name)
            for result in self._results_of(test_type)
            for method in result.junit_method_results
            if method.type
            not in (JUnitMethodResultType.SUCCESS, JUnitMethodResultType.IGNORED)
        ]
        return "\n".join(details) if details else None

    def not_enough_student_tests_message(self) -> str | None:
        """
        Check the student tests against the assignment's minimum.

        Returns:
            A message describing the shortfall, or None if there are enough tests

        Raises:
            InvariantViolationError: If the assignment doesn't accept student tests
        """
        if not self.assignment.accepts_student_tests:
            raise InvariantViolationError(
                f"Assignment {self.assignment.id} doesn't accept student tests"
            )

        minimum = self.assignment.min_student_tests or 0
        summary = self.junit_summary_as_object(TestType.STUDENT)

        if summary is None:
            return (
                "The submission doesn't include unit tests. "
                f"The assignment requires a minimum of {minimum} tests."
            )

        if summary.num_tests < minimum:
            return (
                f"The submission only includes {summary.num_tests} unit tests. "
                f"The assignment requires a minimum of {minimum} tests."
            )

        return None

    def results_matrix(self) -> list[JUnitMethodResult]:
        """
        One outcome per declared test method, in catalogue order.

        Declared methods without a result get an EMPTY outcome, so the matrix
        never has holes.
        """
        found = [
            method
            for result in self.junit_results
            if result.is_teacher_public(self.assignment) or result.is_teacher_hidden()
            for method in result.junit_method_results
        ]

        matrix = []
        for declared in self.assignment_test_methods:
            match = next(
                (
                    method
                    for method in found
                    if method.method_name == declared.test_method
                    and method.class_name == declared.test_class
                ),
                None,
            )
            matrix.append(match if match is not None else JUnitMethodResult.empty())
        return matrix

    def coverage_percentage(self) -> int | None:
        """Line coverage across every coverage report, or None without reports."""
        missed = sum(r.lines_missed for r in self.jacoco_results)
        covered = sum(r.lines_covered for r in self.jacoco_results)
        if missed + covered == 0:
            return None
        return covered * 100 // (missed + covered)

    # Execution

    def execution_failed(self) -> bool:
        """
        Whether the build itself broke, as opposed to code that doesn't compile or tests that fail.
        """
        if self.assignment.compiler is Compiler.GRADLE:
            return self._execution_failed_gradle()
        return self._execution_failed_maven()

    def _execution_failed_maven(self) -> bool:
        failed_goals = [line for line in self.output_lines if line.startswith(MAVEN_FAILED_GOAL)]
        if not failed_goals:
            return False
        # compiler and surefire failures are the student's problem, not the build's
        return not any(line.startswith(MAVEN_BENIGN_FAILED_GOALS) for line in failed_goals)

    def _execution_failed_gradle(self) -> bool:
        lines = self.output_lines
        for idx, line in enumerate(lines):
            match = GRADLE_FAILED_TASK.search(line)
            if match:
                task = match.group(1).rsplit(":", 1)[-1]
                if not _is_benign_gradle_task(task):
                    logger.debug(f"Fatal failure of gradle task {task}")
                    return True
            elif line.startswith(GRADLE_WHAT_WENT_WRONG):
                reason = next((l for l in lines[idx + 1 :] if l.strip()), "")
                if not GRADLE_FAILED_TASK.search(reason):
                    logger.debug(f"Fatal gradle failure: {reason}")
                    return True
        return False

    # Compilation

    def compilation_errors(self) -> list[str]:
        """
        Compilation problems of main and test sources.

        Paths are made relative to the source folder so messages read the same
        for every student; test sources are tagged with "[TEST] ".
        """
        if self.assignment.compiler is Compiler.GRADLE:
            errors = self._compilation_errors_gradle()
        else:
            errors = self._compilation_errors_maven()

        logger.info(f"Finished checking for build errors -> {errors}")
        return errors

    def _clean_maven_compiler_lines(self, lines: tuple[str, ...]) -> list[str]:
        return [
            line.replace(f"[ERROR] {self._main_source_prefix}", "").replace(
                f"[ERROR] {self._test_source_prefix}", "[TEST] "
            )
            for line in lines
            if line.startswith("[ERROR] ") or line.startswith("  ")
        ]

    def _compilation_errors_maven(self) -> list[str]:
        logger.info("Started checking Maven compilation errors for project.")
        lines = self.output_lines
        errors: list[str] = []

        start_marker = (
            MAVEN_JAVA_COMPILATION_START
            if self.assignment.language is Language.JAVA
            else MAVEN_KOTLIN_COMPILATION_START
        )
        start_idx = end_idx = -1
        for idx, line in enumerate(lines):
            if start_marker.fullmatch(line):
                start_idx = idx + 1
                logger.debug(f"Found start of compilation output (line {idx})")
            elif start_idx > 0 and (
                line.startswith(MAVEN_BUILD_FAILURE) or line.startswith(MAVEN_NEXT_STEP)
            ):
                end_idx = idx
                logger.debug(f"Found end of compilation output (line {idx})")
                break

        if start_idx > 0 and end_idx > start_idx:
            errors.extend(self._clean_maven_compiler_lines(lines[start_idx:end_idx]))

        # test sources fail to compile independently of main sources
        start_idx = end_idx = -1
        for idx, line in enumerate(lines):
            if MAVEN_KOTLIN_TEST_COMPILATION_START.fullmatch(line):
                start_idx = idx + 1
            if line.startswith(MAVEN_HELP_MARKER):
                end_idx = idx

        if start_idx > 0 and end_idx > start_idx:
            errors.extend(self._clean_maven_compiler_lines(lines[start_idx:end_idx]))

        # a System.exit() in student code kills the test runner before it reports anything
        if any(MAVEN_FORKED_VM_CRASH in line for line in lines):
            errors.append(FORCED_EXIT_MESSAGES[self.assignment.language])

        return errors

    def _gradle_section(self, start_marker: re.Pattern) -> list[str]:
        """Lines after every banner matching start_marker, up to the next banner."""
        section: list[str] = []
        inside = False
        for line in self.output_lines:
            if start_marker.fullmatch(line):
                inside = True
            elif inside and line.startswith(GRADLE_SECTION_END):
                inside = False
            elif inside:
                section.append(line)
        return section

    def _clean_gradle_compiler_lines(self, lines: list[str]) -> list[str]:
        errors = []
        for line in lines:
            if line.startswith("e: "):
                line = line[len("e: ") :]
            elif ": error:" not in line and not line.startswith(("  ", "\t")):
                continue
            line = line.replace("file://", "")
            line = line.replace(self._main_source_prefix, "").replace(
                self._test_source_prefix, "[TEST] "
            )
            errors.append(line)
        return errors

    def _compilation_errors_gradle(self) -> list[str]:
        logger.info("Started checking Gradle compilation errors for project.")
        errors = self._clean_gradle_compiler_lines(
            self._gradle_section(GRADLE_COMPILATION_START)
        )
        errors.extend(
            self._clean_gradle_compiler_lines(
                self._gradle_section(GRADLE_TEST_COMPILATION_START)
            )
        )

        if any(GRADLE_TEST_EXECUTOR_CRASH.search(line) for line in self.output_lines):
            errors.append(FORCED_EXIT_MESSAGES[self.assignment.language])

        return errors

    # Static analysis

    def checkstyle_validation_active(self) -> bool:
        """Whether the build ran the linter for this assignment's language."""
        java = self.assignment.language is Language.JAVA
        if self.assignment.compiler is Compiler.GRADLE:
            marker = GRADLE_CHECKSTYLE_START if java else GRADLE_DETEKT_START
            return any(marker.fullmatch(line) for line in self.output_lines)

        prefix = MAVEN_CHECKSTYLE_START if java else MAVEN_DETEKT_START
        return any(line.startswith(prefix) for line in self.output_lines)

    def checkstyle_errors(self) -> list[str]:
        """Linter findings, empty when the linter didn't run."""
        java = self.assignment.language is Language.JAVA
        if self.assignment.compiler is Compiler.GRADLE:
            if java:
                return self._checkstyle_errors_gradle()
            return self._detekt_errors(self._gradle_section(GRADLE_DETEKT_START))

        if java:
            return self._checkstyle_errors_maven()
        return self._detekt_errors(self._maven_detekt_section())

    def _checkstyle_errors_maven(self) -> list[str]:
        lines = self.output_lines
        start_idx = end_idx = -1
        for idx, line in enumerate(lines):
            if line.startswith(MAVEN_CHECKSTYLE_START):
                start_idx = idx + 1
            if line.startswith(MAVEN_CHECKSTYLE_END):
                end_idx = idx

        if start_idx < 0:
            return []
        if end_idx < start_idx:
            end_idx = len(lines)

        return [
            line.replace(f"[WARN] {self._main_source_prefix}", "")
            for line in lines[start_idx:end_idx]
            if line.startswith("[WARN] ")
        ]

    def _checkstyle_errors_gradle(self) -> list[str]:
        return [
            line[len(GRADLE_CHECKSTYLE_WARNING) :].replace(self._main_source_prefix, "")
            for line in self.output_lines
            if line.startswith(GRADLE_CHECKSTYLE_WARNING)
        ]

    def _maven_detekt_section(self) -> list[str]:
        lines = self.output_lines
        start_idx = -1
        end_idx = len(lines)
        for idx, line in enumerate(lines):
            if line.startswith(MAVEN_DETEKT_START):
                start_idx = idx + 1
            # depending on the detekt-maven-plugin version, the output is different
            elif (
                start_idx > 0
                and idx > start_idx + 1
                and (line.startswith("detekt finished") or line.startswith("[INFO]"))
            ):
                end_idx = idx
                break

        if start_idx < 0:
            return []
        return list(lines[start_idx:end_idx])

    def _detekt_errors(self, section: list[str]) -> list[str]:
        errors: list[str] = []
        for line in section:
            if not line.startswith("\t") or line.startswith("\t-"):
                continue
            message = translate_detekt_error(
                line.replace("\t", "").replace(self._main_source_prefix, "")
            )
            if message not in errors:
                errors.append(message)
        return errors

    def pmd_errors(self) -> list[str]:
        return [
            line[len(PMD_FAILURE) :].strip()
            for line in self.output_lines
            if line.startswith(PMD_FAILURE)
        ]


def _is_benign_gradle_task(task: str) -> bool:
    return task.startswith(("compile", "test")) or task in GRADLE_BENIGN_TASKS


def translate_detekt_error(original_error: str) -> str:
    """
    Replace the detekt rule id of a finding with an explanation students understand.

    Args:
        original_error: e.g. "VariableNaming - [x] at Main.kt:3:5"

    Returns:
        The finding with its rule id explained
    """
    translated = original_error
    for rule, explanation in DETEKT_TRANSLATIONS.items():
        translated = translated.replace(f"{rule} -", f"{explanation} -")
    return translated


class BuildReportBuilder:
    """Assembles a BuildReport from captured output and the reports a build left behind."""

    def __init__(
        self,
        junit_reader: JUnitReportReader | None = None,
        jacoco_reader: JacocoReportReader | None = None,
    ):
        self.junit_reader = junit_reader or JUnitReportReader()
        self.jacoco_reader = jacoco_reader or JacocoReportReader()

    def build(
        self,
        output_lines: list[str] | tuple[str, ...],
        project_folder: str | Path,
        assignment: Assignment,
        assignment_test_methods: list[AssignmentTestMethod] | None = None,
        junit_reports: list[JUnitReport] | None = None,
        jacoco_reports: list[JacocoReport] | None = None,
    ) -> BuildReport:
        """
        Create the report of one build.

        Args:
            output_lines: Captured build-tool output
            project_folder: Root of the built project
            assignment: Assignment the project targets
            assignment_test_methods: Test methods the assignment declares
            junit_reports: Archived test result files; read from the project folder if None
            jacoco_reports: Archived coverage files; read from the project folder if None

        Returns:
            BuildReport over private copies of the inputs
        """
        folder = Path(project_folder).absolute()
        layout = ProjectLayout.for_compiler(assignment.compiler)

        if junit_reports is None:
            junit_results = self.junit_reader.read_files(layout.junit_report_files(folder))
        else:
            junit_results = [
                result
                for result in (self._parse_archived_junit(r) for r in junit_reports)
                if result is not None
            ]

        if jacoco_reports is None:
            jacoco_results = self.jacoco_reader.read_reports(
                [
                    (f.name, f.read_text(encoding="utf-8", errors="replace"))
                    for f in layout.coverage_report_files(folder)
                ]
            )
        else:
            jacoco_results = self.jacoco_reader.read_reports(
                [(r.file_name, r.csv_report) for r in jacoco_reports]
            )

        return BuildReport(
            output_lines=tuple(output_lines),
            project_folder=str(folder),
            assignment=assignment,
            junit_results=tuple(junit_results),
            jacoco_results=tuple(jacoco_results),
            assignment_test_methods=tuple(assignment_test_methods or ()),
        )

    def _parse_archived_junit(self, report: JUnitReport) -> JUnitResults | None:
        try:
            return self.junit_reader.read_xml(report.xml_report)
        except Exception as e:
            logger.warning(f"Ignoring unreadable archived test report {report.file_name}: {e}")
            return None
