"""
Build tool invocation.

Runs Maven or Gradle against an untrusted project folder with a bounded
amount of captured output and a wall-clock timeout. Both invokers return an
InvocationResult built synchronously by the run call itself.
"""

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from dp_common.exceptions import InvocationError

from .config import BuildSettings
from .layout import GRADLE_LAYOUT

logger = logging.getLogger(__name__)

TRIMMED_OUTPUT_SENTINEL = "*** Trimmed here ***"

# Max bytes of a single output line before it is discarded
_STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class InvocationResult:
    """
    Outcome of one build-tool invocation.

    If expired_by_timeout is set, output_lines only holds what was captured
    before the process was killed.
    """

    exit_code: int
    output_lines: tuple[str, ...]
    expired_by_timeout: bool = False
    too_much_output: bool = False

    @property
    def output(self) -> str:
        return "\n".join(self.output_lines)


class _OutputCollector:
    """Append-only line buffer that stops storing once the threshold is reached."""

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.lines: list[str] = []
        self.num_lines = 0

    def add(self, line: str) -> None:
        self.num_lines += 1
        if self.num_lines < self.threshold:
            self.lines.append(line)
        elif self.num_lines == self.threshold:
            self.lines.append(TRIMMED_OUTPUT_SENTINEL)

    @property
    def trimmed(self) -> bool:
        return self.num_lines >= self.threshold


class Invoker(ABC):
    """
    Runs a build tool against a project folder.

    Subclasses only decide the command line; process handling, output
    bounding and timeouts are shared.
    """

    tool_name = "build tool"

    def __init__(self, settings: BuildSettings | None = None, show_output: bool = False):
        """
        Initialize the invoker.

        Args:
            settings: Installation paths and limits (default: from environment)
            show_output: Log every captured line at DEBUG level
        """
        self.settings = settings or BuildSettings.from_env()
        self.show_output = show_output
        self.security_manager_enabled = self.settings.security_manager is not None

    def disable_security(self) -> None:
        """Run submitted code without the sandbox security manager."""
        self.security_manager_enabled = False

    def arg_line(self, principal_name: str | None, max_memory_mb: int | None) -> str:
        """
        JVM arguments for the forked test runner.

        Args:
            principal_name: Identity the submitted code runs as
            max_memory_mb: Heap cap, or None for the JVM default

        Returns:
            Space separated JVM arguments
        """
        args = []
        if max_memory_mb is not None:
            args.append(f"-Xmx{max_memory_mb}M")
        if principal_name is not None:
            args.append(f"-DdropProject.currentUserId={principal_name}")
        if self.security_manager_enabled and self.settings.security_manager:
            args.append(f"-Djava.security.manager={self.settings.security_manager}")
        return " ".join(args)

    @abstractmethod
    def build_command(self, project_folder: Path, arg_line: str) -> list[str]:
        """
        The command line that compiles and tests the project.

        Args:
            project_folder: Root of the project
            arg_line: JVM arguments for the test runner

        Returns:
            Executable followed by its arguments
        """
        pass

    async def run(
        self,
        project_folder: str | Path,
        principal_name: str | None = None,
        max_memory_mb: int | None = None,
    ) -> InvocationResult:
        """
        Compile and test a project, capturing its output.

        Args:
            project_folder: Root of the project
            principal_name: Identity the submitted code runs as
            max_memory_mb: Heap cap for the test runner

        Returns:
            InvocationResult with exit code, captured lines and limit flags

        Raises:
            InvocationError: If the build tool cannot be started
        """
        project_folder = Path(project_folder)
        command = self.build_command(
            project_folder, self.arg_line(principal_name, max_memory_mb)
        )
        logger.debug(f"Running {' '.join(command)} in {project_folder}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(project_folder),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,  # own process group, so the whole tree can be killed
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise InvocationError(f"Couldn't start {self.tool_name}: {e}") from e

        collector = _OutputCollector(self.settings.output_threshold)
        expired = False

        try:
            await asyncio.wait_for(
                self._consume(process, collector), timeout=self.settings.timeout_seconds
            )
        except asyncio.TimeoutError:
            expired = True
            logger.warning(
                f"{self.tool_name} in {project_folder} exceeded "
                f"{self.settings.timeout_seconds}s, killing it"
            )
            await self._terminate(process)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        if collector.trimmed:
            logger.warning(
                f"{self.tool_name} in {project_folder} produced {collector.num_lines} lines, "
                f"kept {len(collector.lines)}"
            )

        return InvocationResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            output_lines=tuple(collector.lines),
            expired_by_timeout=expired,
            too_much_output=collector.trimmed,
        )

    async def _consume(
        self, process: asyncio.subprocess.Process, collector: _OutputCollector
    ) -> None:
        """Read output until EOF, then wait for the process to exit."""
        assert process.stdout is not None, (
            "stdout should be available when PIPE is specified"
        )

        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError:
                # readline already discarded the oversized line
                collector.add("*** Line too long, discarded ***")
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if self.show_output:
                logger.debug(f">>> {line}")
            collector.add(line)

        await process.wait()

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        """Kill the process and everything it spawned."""
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            # Already gone, or the group is not ours: fall back to the direct child
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()


class MavenInvoker(Invoker):
    """Drives a pom-based project through clean, compile and test."""

    tool_name = "maven"
    goals = ("clean", "compile", "test")

    def build_command(self, project_folder: Path, arg_line: str) -> list[str]:
        return [
            str(Path(self.settings.maven_home) / "bin" / "mvn"),
            "--batch-mode",
            f"-Dmaven.repo.local={self.settings.maven_repository}",
            f"-Ddp.argLine={arg_line}",
            *self.goals,
        ]


class GradleInvoker(Invoker):
    """Drives a Gradle project through clean, compile, test and coverage tasks."""

    tool_name = "gradle"
    tasks = ("clean", "classes", "testClasses", "test")
    coverage_task = "jacocoTestReport"

    def build_command(self, project_folder: Path, arg_line: str) -> list[str]:
        tasks = list(self.tasks)
        # Requesting the coverage task on a build without jacoco fails the build
        if GRADLE_LAYOUT.has_coverage_report(project_folder):
            tasks.append(self.coverage_task)

        return [
            str(Path(self.settings.gradle_home) / "bin" / "gradle"),
            "--console=plain",
            "--no-daemon",
            "--continue",
            f"-Dmaven.repo.local={self.settings.maven_repository}",
            f"-Pdp.argLine={arg_line}",
            *tasks,
        ]
