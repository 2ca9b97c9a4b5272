"""
Where each build tool puts its descriptor and reports inside a project folder.
"""

from dataclasses import dataclass
from pathlib import Path

from dp_common.models import Compiler


@dataclass(frozen=True)
class ProjectLayout:
    build_files: tuple[str, ...]
    junit_reports_dir: str
    coverage_reports_dir: str
    coverage_plugin_marker: str

    @classmethod
    def for_compiler(cls, compiler: Compiler) -> "ProjectLayout":
        if compiler is Compiler.GRADLE:
            return GRADLE_LAYOUT
        return MAVEN_LAYOUT

    def build_file(self, project_folder: Path) -> Path | None:
        """The first build descriptor that exists in the project, if any."""
        for name in self.build_files:
            candidate = project_folder / name
            if candidate.exists():
                return candidate
        return None

    def has_coverage_report(self, project_folder: Path) -> bool:
        """Whether the project's build descriptor is configured to measure coverage."""
        build_file = self.build_file(project_folder)
        if build_file is None:
            return False
        return self.coverage_plugin_marker in build_file.read_text(
            encoding="utf-8", errors="replace"
        )

    def junit_report_files(self, project_folder: Path) -> list[Path]:
        folder = project_folder / self.junit_reports_dir
        if not folder.is_dir():
            return []
        return sorted(p for p in folder.rglob("*.xml") if p.is_file())

    def coverage_report_files(self, project_folder: Path) -> list[Path]:
        folder = project_folder / self.coverage_reports_dir
        if not folder.is_dir():
            return []
        return sorted(p for p in folder.iterdir() if p.suffix == ".csv")


MAVEN_LAYOUT = ProjectLayout(
    build_files=("pom.xml",),
    junit_reports_dir="target/surefire-reports",
    coverage_reports_dir="target/site/jacoco",
    coverage_plugin_marker="jacoco-maven-plugin",
)

GRADLE_LAYOUT = ProjectLayout(
    build_files=("build.gradle.kts", "build.gradle"),
    junit_reports_dir="build/test-results/test",
    coverage_reports_dir="build/reports/jacoco/test",
    coverage_plugin_marker="jacoco",
)
