"""
DP Builder module.

The build pipeline: invoking Maven or Gradle on a project folder, parsing
what it printed and the reports it left behind, and turning that into the
indicator rows of a submission report.
"""

from .build_report import BuildReport, BuildReportBuilder, JUnitSummary, TestType
from .config import BuildSettings
from .invoker import GradleInvoker, InvocationResult, Invoker, MavenInvoker
from .worker import BuildWorker

__all__ = [
    "BuildReport",
    "BuildReportBuilder",
    "BuildSettings",
    "BuildWorker",
    "GradleInvoker",
    "InvocationResult",
    "Invoker",
    "JUnitSummary",
    "MavenInvoker",
    "TestType",
]
