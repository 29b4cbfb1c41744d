"""
Source file discovery.

This module handles:
- Scanning the project source directory recursively for C/C++ sources
- Detecting the precompiled header source (pch.cpp) when the project has one
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import EXIT_PROJECT, AbsBuildError

SOURCE_EXTENSIONS = {".cpp", ".cxx", ".cc", ".c"}
PCH_SOURCE_NAME = "pch.cpp"
PCH_HEADER_NAME = "pch.h"


class SourceDirectoryError(AbsBuildError):
    """Raised when the project's source directory is missing or has no sources."""

    exit_code = EXIT_PROJECT
    title = "Source directory error"


@dataclass
class SourceSet:
    """Sources of one project.

    pch_source, when set, is compiled before everything in `sources` and is
    not listed there.
    """

    root: Path
    sources: List[Path]
    pch_source: Optional[Path] = None

    def all_sources(self) -> List[Path]:
        """Get all source files, precompiled header source first."""
        return ([self.pch_source] if self.pch_source else []) + self.sources


class SourceScanner:
    """Finds the compilable sources under a project's source directory."""

    def __init__(self, src_dir: Path):
        """
        Initialize source scanner.

        Args:
            src_dir: Project source directory
        """
        self.src_dir = Path(src_dir)

    def scan(self) -> SourceSet:
        """
        Scan for all source files.

        Returns:
            SourceSet with sources sorted by path

        Raises:
            SourceDirectoryError: If the directory is missing or contains no sources
        """
        if not self.src_dir.is_dir():
            raise SourceDirectoryError(f"Source directory not found: {self.src_dir}")

        found = sorted(
            p.resolve()
            for p in self.src_dir.rglob("*")
            if p.is_file() and p.suffix.lower() in SOURCE_EXTENSIONS
        )
        if not found:
            raise SourceDirectoryError(f"No C/C++ source files found in {self.src_dir}")

        pch_source = None
        pch_candidate = (self.src_dir / PCH_SOURCE_NAME).resolve()
        if pch_candidate in found and (self.src_dir / PCH_HEADER_NAME).is_file():
            pch_source = pch_candidate
            found.remove(pch_candidate)

        return SourceSet(root=self.src_dir.resolve(), sources=found, pch_source=pch_source)
