"""
Settings consumed by the build pipeline.

The pipeline treats these as opaque values injected at startup; entry points
build them from command-line arguments and environment variables.

Environment Variables:
    DP_MAVEN_HOME: Maven installation folder (default: /usr/share/maven)
    DP_MAVEN_REPOSITORY: Local artifact repository (default: ~/.m2/repository)
    DP_GRADLE_HOME: Gradle installation folder (default: /opt/gradle)
    DP_OUTPUT_THRESHOLD: Max captured output lines per invocation (default: 1000)
    DP_BUILD_TIMEOUT: Seconds before an invocation is killed (default: 180)
    DP_SECURITY_MANAGER: Sandbox security manager class, empty to disable
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TOO_MUCH_OUTPUT_THRESHOLD = 1000
DEFAULT_BUILD_TIMEOUT = 180.0
DEFAULT_SECURITY_MANAGER = "org.dropProject.security.SandboxSecurityManager"


@dataclass(frozen=True)
class BuildSettings:
    """Installation paths and resource limits for build invocations."""

    maven_home: str = "/usr/share/maven"
    maven_repository: str = str(Path.home() / ".m2" / "repository")
    gradle_home: str = "/opt/gradle"
    output_threshold: int = TOO_MUCH_OUTPUT_THRESHOLD
    timeout_seconds: float = DEFAULT_BUILD_TIMEOUT
    security_manager: str | None = DEFAULT_SECURITY_MANAGER

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "BuildSettings":
        """
        Build settings from environment variables, falling back to defaults.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            BuildSettings instance
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        security_manager = env.get("DP_SECURITY_MANAGER", defaults.security_manager)

        return cls(
            maven_home=env.get("DP_MAVEN_HOME", defaults.maven_home),
            maven_repository=env.get("DP_MAVEN_REPOSITORY", defaults.maven_repository),
            gradle_home=env.get("DP_GRADLE_HOME", defaults.gradle_home),
            output_threshold=positive_setting_from_env(
                env, "DP_OUTPUT_THRESHOLD", defaults.output_threshold, int
            ),
            timeout_seconds=positive_setting_from_env(
                env, "DP_BUILD_TIMEOUT", defaults.timeout_seconds
            ),
            security_manager=security_manager or None,
        )


def positive_setting(raw, name: str, default, parse=float):
    """
    Parse a positive setting, warning and falling back on invalid values.

    Args:
        raw: Value as given (string from the environment, or already parsed)
        name: Setting name used in the warning
        default: Value returned when raw is invalid
        parse: int for counts ("0.5" is rejected, not truncated), float otherwise

    Returns:
        The parsed value, or default
    """
    try:
        value = parse(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def positive_setting_from_env(env, name: str, default, parse=float):
    """Read a positive setting from the environment, or default when unset."""
    raw = env.get(name)
    if raw is None:
        return default
    return positive_setting(raw, name, default, parse)
