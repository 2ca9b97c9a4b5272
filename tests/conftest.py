"""
Shared helpers for loading captured build outputs and reports.
"""

from pathlib import Path

import pytest

FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Checkout path substituted for {project} in the captured logs
PROJECT_FOLDER = "/home/dp/submissions/sub-42"


def load_log(name: str, project_folder: str = PROJECT_FOLDER) -> list[str]:
    """Lines of a captured build output, with the project path filled in."""
    text = (FIXTURES_DIR / name).read_text(encoding="utf-8")
    return text.replace("{project}", project_folder).splitlines()


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


@pytest.fixture
def surefire_dir() -> Path:
    return FIXTURES_DIR / "surefire"
