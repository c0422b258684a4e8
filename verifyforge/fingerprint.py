"""
Content Fingerprinting
======================

Computes stable fingerprints over a caller-declared set of named inputs.
A fingerprint changes when any input's bytes change or when an input is
added or removed; nothing else changes it.

Usage:
    from verifyforge.fingerprint import ContentFingerprinter, project_inputs

    fingerprinter = ContentFingerprinter()
    digest = fingerprinter.fingerprint(project_inputs(project_dir))
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

# Build/config files that define a project's profile
DEFAULT_CONFIG_FILES = (
    "build.gradle.kts",
    "build.gradle",
    "settings.gradle.kts",
    "settings.gradle",
    "pom.xml",
    ".editorconfig",
    "pyproject.toml",
    "requirements.txt",
    "setup.py",
    "setup.cfg",
    "Pipfile",
    "pubspec.yaml",
)

DEFAULT_SOURCE_EXTENSIONS = (".py", ".kt", ".java", ".dart")

# Directories never counted as part of the source tree
EXCLUDED_DIRS = {"__pycache__", "node_modules", "venv", "build", "target", "dist"}

_MISSING = b"\x00<missing>\x00"


@dataclass(frozen=True)
class FingerprintInput:
    """A named byte source that contributes to a fingerprint."""
    name: str
    data: bytes


def bytes_source(name: str, data: bytes) -> FingerprintInput:
    return FingerprintInput(name=name, data=bytes(data))


def text_source(name: str, text: str) -> FingerprintInput:
    return FingerprintInput(name=name, data=text.encode("utf-8"))


def count_source(name: str, count: int) -> FingerprintInput:
    """Integer input such as a source-file count."""
    return FingerprintInput(name=name, data=str(int(count)).encode("ascii"))


def file_source(path: Path, name: Optional[str] = None) -> FingerprintInput:
    """
    File contents as an input.

    A missing or unreadable file hashes to a fixed marker, so creating the
    file later changes the fingerprint.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError:
        data = _MISSING
    return FingerprintInput(name=name or path.name, data=data)


def count_source_files(
    project_dir: Path,
    extensions: Sequence[str] = DEFAULT_SOURCE_EXTENSIONS,
) -> int:
    """Count source files under project_dir, skipping hidden and build directories."""
    count = 0
    suffixes = tuple(extensions)
    for root, dirs, files in os.walk(project_dir):
        dirs[:] = [d for d in dirs if not d.startswith(".") and d not in EXCLUDED_DIRS]
        count += sum(1 for f in files if f.endswith(suffixes))
    return count


def project_inputs(
    project_dir: Path,
    config_files: Sequence[str] = DEFAULT_CONFIG_FILES,
    extensions: Sequence[str] = DEFAULT_SOURCE_EXTENSIONS,
) -> list[FingerprintInput]:
    """
    Declared inputs for a project profile: every known config file plus the
    source-file count.
    """
    project_dir = Path(project_dir)
    inputs = [file_source(project_dir / name, name=f"config:{name}") for name in config_files]
    inputs.append(count_source("source_file_count", count_source_files(project_dir, extensions)))
    return inputs


def project_key(project_dir: Path) -> str:
    """Logical cache key for a project, derived from its resolved path."""
    resolved = str(Path(project_dir).resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:32]


class ContentFingerprinter:
    """
    Deterministic SHA-256 over a named set of inputs.

    Inputs are combined in name order with length prefixes, so the same named
    set always yields the same digest regardless of the order it was listed in,
    and no two distinct sets can collide by concatenation.
    """

    def __init__(self, algorithm: str = "sha256"):
        self.algorithm = algorithm

    def fingerprint(self, inputs: Sequence[FingerprintInput]) -> str:
        names = [i.name for i in inputs]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate fingerprint input names: {duplicates}")

        hasher = hashlib.new(self.algorithm)
        for item in sorted(inputs, key=lambda i: i.name):
            name = item.name.encode("utf-8")
            hasher.update(len(name).to_bytes(8, "big"))
            hasher.update(name)
            hasher.update(len(item.data).to_bytes(8, "big"))
            hasher.update(item.data)
        return hasher.hexdigest()


def fingerprint_project(project_dir: Path) -> str:
    """Convenience: fingerprint a project's declared profile inputs."""
    return ContentFingerprinter().fingerprint(project_inputs(project_dir))
