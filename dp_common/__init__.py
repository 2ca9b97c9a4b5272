"""
DP Common module.

This module contains shared domain models and interfaces used across
the build pipeline components (builder, controller, persistence, admin).

The common module has no dependencies on other dp_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .exceptions import (
    BuildPipelineError,
    CoverageIsolationError,
    InvariantViolationError,
    InvocationError,
)
from .models import (
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
from .repository import SubmissionRepository

__all__ = [
    "Assignment",
    "AssignmentTestMethod",
    "BuildOutput",
    "BuildPipelineError",
    "Compiler",
    "CoverageIsolationError",
    "Indicator",
    "InvariantViolationError",
    "InvocationError",
    "JUnitReport",
    "JacocoReport",
    "Language",
    "Submission",
    "SubmissionReport",
    "SubmissionRepository",
    "SubmissionStatus",
    "TestVisibility",
]
