"""
Test framework detection.

Looks at marker files in a project directory and picks the command a
worker should run to test its changes. Building directives embed it.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class FrameworkInfo:
    """Detected framework and its test command."""
    framework: str
    test_command: str


NO_FRAMEWORK = FrameworkInfo("none", "echo 'No test framework detected'")


def _has_npm_test_script(package_json: Path) -> bool:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return isinstance(scripts, dict) and "test" in scripts


def detect_framework(directory: str | Path) -> FrameworkInfo:
    """
    Detect the test framework of a project.

    Checked in order: Rust, Python, Node.js, Go, Gradle, Maven.
    """
    path = Path(directory)

    if (path / "Cargo.toml").exists():
        command = "cargo nextest run" if shutil.which("cargo-nextest") else "cargo test"
        return FrameworkInfo("rust", command)

    if (path / "pyproject.toml").exists() or (path / "setup.py").exists():
        if (
            (path / "pyproject.toml").exists()
            or (path / "pytest.ini").exists()
            or shutil.which("pytest")
        ):
            return FrameworkInfo("python", "pytest")
        return FrameworkInfo("python", "python -m unittest discover")

    if (path / "package.json").exists():
        if _has_npm_test_script(path / "package.json"):
            return FrameworkInfo("node", "npm test")
        return FrameworkInfo("node", "echo 'No test script defined'")

    if (path / "go.mod").exists():
        return FrameworkInfo("go", "go test ./...")

    if (path / "build.gradle").exists() or (path / "build.gradle.kts").exists():
        return FrameworkInfo("java", "./gradlew test")

    if (path / "pom.xml").exists():
        return FrameworkInfo("java", "mvn test")

    return NO_FRAMEWORK
