"""
Standalone entrypoint for running the build controller.

Usage:
    python -m dp_controller [OPTIONS]
    dp-controller [OPTIONS]  (after pip install)

Environment Variables:
    DP_DB_PATH: Database path (default: dp_submissions.db)
    DP_MAVEN_HOME: Maven installation folder (default: /usr/share/maven)
    DP_MAVEN_REPOSITORY: Local artifact repository (default: ~/.m2/repository)
    DP_GRADLE_HOME: Gradle installation folder (default: /opt/gradle)
    DP_OUTPUT_THRESHOLD: Max captured output lines per build (default: 1000)
    DP_BUILD_TIMEOUT: Seconds before a build is killed (default: 180)
    DP_MAX_CONCURRENT_BUILDS: Builds running at the same time (default: 2)
    DP_RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 2.0)
    DP_SECURITY_MANAGER: Sandbox security manager class, empty to disable
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import signal
import sys
from typing import Any

from dp_builder.config import BuildSettings, positive_setting, positive_setting_from_env
from dp_builder.invoker import GradleInvoker, MavenInvoker
from dp_builder.worker import BuildWorker
from dp_controller.controller import BuildController
from dp_persistence.sqlite_repository import SQLiteSubmissionRepository

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="DP Controller - builds pending submissions and records their reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  DP_DB_PATH                 Database path (default: dp_submissions.db)
  DP_MAVEN_HOME              Maven installation folder
  DP_MAVEN_REPOSITORY        Local artifact repository
  DP_GRADLE_HOME             Gradle installation folder
  DP_OUTPUT_THRESHOLD        Max captured output lines per build (default: 1000)
  DP_BUILD_TIMEOUT           Seconds before a build is killed (default: 180)
  DP_MAX_CONCURRENT_BUILDS   Builds running at the same time (default: 2)
  DP_RECONCILE_INTERVAL      Seconds between reconciliation loops (default: 2.0)
  DP_SECURITY_MANAGER        Sandbox security manager class, empty to disable

Note: Command-line arguments override environment variables.

Examples:
  # Run with default settings
  dp-controller

  # Four builds at a time, one minute each at most
  dp-controller --max-builds 4 --timeout 60

  # Enable debug logging and echo build output
  dp-controller --log-level DEBUG --show-output
        """,
    )

    parser.add_argument("--db-path", type=str, default=None, help="Path to SQLite database file")
    parser.add_argument("--maven-home", type=str, default=None, help="Maven installation folder")
    parser.add_argument(
        "--maven-repository", type=str, default=None, help="Local artifact repository"
    )
    parser.add_argument("--gradle-home", type=str, default=None, help="Gradle installation folder")
    parser.add_argument(
        "--output-threshold",
        type=int,
        default=None,
        help="Max captured output lines per build (default: DP_OUTPUT_THRESHOLD env or 1000)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before a build is killed (default: DP_BUILD_TIMEOUT env or 180)",
    )
    parser.add_argument(
        "--max-builds",
        type=int,
        default=None,
        help="Builds running at the same time (default: DP_MAX_CONCURRENT_BUILDS env or 2)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between reconciliation loops (default: DP_RECONCILE_INTERVAL env or 2.0)",
    )
    parser.add_argument(
        "--no-security-manager",
        action="store_true",
        help="Run submitted code without the sandbox security manager",
    )
    parser.add_argument(
        "--show-output",
        action="store_true",
        help="Log every line the build tools print (DEBUG level)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def get_database_path(args: argparse.Namespace) -> str:
    """
    Get the database path from CLI args or environment or use default.

    Args:
        args: Parsed command-line arguments

    Returns:
        Path to the SQLite database file
    """
    if args.db_path:
        return args.db_path
    return os.environ.get("DP_DB_PATH", "dp_submissions.db")


def _positive_setting(cli_value, env_name: str, default, parse=float):
    """CLI value, else environment variable, else default; invalid values fall back."""
    if cli_value is not None:
        return positive_setting(cli_value, env_name, default, parse)
    return positive_setting_from_env(os.environ, env_name, default, parse)


def get_reconcile_interval(args: argparse.Namespace) -> float:
    return _positive_setting(args.interval, "DP_RECONCILE_INTERVAL", 2.0)


def get_max_builds(args: argparse.Namespace) -> int:
    return _positive_setting(args.max_builds, "DP_MAX_CONCURRENT_BUILDS", 2, int)


def get_build_settings(args: argparse.Namespace) -> BuildSettings:
    """
    Build settings from environment, overridden by CLI args.

    Args:
        args: Parsed command-line arguments

    Returns:
        BuildSettings for the invokers
    """
    settings = BuildSettings.from_env()
    overrides: dict[str, Any] = {}

    if args.maven_home:
        overrides["maven_home"] = args.maven_home
    if args.maven_repository:
        overrides["maven_repository"] = args.maven_repository
    if args.gradle_home:
        overrides["gradle_home"] = args.gradle_home
    if args.output_threshold is not None:
        overrides["output_threshold"] = _positive_setting(
            args.output_threshold, "DP_OUTPUT_THRESHOLD", settings.output_threshold, int
        )
    if args.timeout is not None:
        overrides["timeout_seconds"] = _positive_setting(
            args.timeout, "DP_BUILD_TIMEOUT", settings.timeout_seconds
        )
    if args.no_security_manager:
        overrides["security_manager"] = None

    return dataclasses.replace(settings, **overrides)


async def run_controller(args: argparse.Namespace) -> None:
    """
    Initialize and run the build controller.

    Args:
        args: Parsed command-line arguments

    This function sets up the controller with configured parameters and
    runs it until interrupted by SIGINT or SIGTERM.
    """
    db_path = get_database_path(args)
    reconcile_interval = get_reconcile_interval(args)
    max_builds = get_max_builds(args)
    settings = get_build_settings(args)

    logger.info("Starting DP Controller")
    logger.info(f"  Database: {db_path}")
    logger.info(f"  Maven: {settings.maven_home} (repository {settings.maven_repository})")
    logger.info(f"  Gradle: {settings.gradle_home}")
    logger.info(f"  Build timeout: {settings.timeout_seconds}s")
    logger.info(f"  Output threshold: {settings.output_threshold} lines")
    logger.info(f"  Security manager: {settings.security_manager or '(disabled)'}")
    logger.info(f"  Concurrent builds: {max_builds}")
    logger.info(f"  Reconcile interval: {reconcile_interval}s")

    repository = SQLiteSubmissionRepository(db_path)
    await repository.initialize()
    logger.info("Database initialized")

    worker = BuildWorker(
        repository,
        maven_invoker=MavenInvoker(settings, show_output=args.show_output),
        gradle_invoker=GradleInvoker(settings, show_output=args.show_output),
    )
    controller = BuildController(
        repository=repository,
        worker=worker,
        reconcile_interval=reconcile_interval,
        max_concurrent_builds=max_builds,
    )

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler(sig: Any, _frame: Any) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}, initiating graceful shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await controller.start()
        logger.info("Controller started successfully")

        await shutdown_event.wait()

    except Exception as e:
        logger.error(f"Controller error: {e}", exc_info=True)
        raise
    finally:
        logger.info("Stopping controller...")
        await controller.stop()
        logger.info("Closing database connections...")
        await repository.close()
        logger.info("Controller stopped cleanly")


def main() -> int:
    """
    Main entrypoint for the controller.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run_controller(args))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
