"""
Exception hierarchy for the build pipeline.

Build-domain outcomes (compilation errors, lint findings, failing tests) are
never raised; they end up as indicator values. Only infrastructure failures
and programming-contract violations are exceptions.
"""


class BuildPipelineError(Exception):
    """Base class for infrastructure failures while building a submission."""


class InvocationError(BuildPipelineError):
    """The build tool could not be launched."""


class CoverageIsolationError(BuildPipelineError):
    """Teacher test classes could not be moved out of (or back into) the test path."""


class InvariantViolationError(RuntimeError):
    """A method was called in a state its contract does not allow."""
