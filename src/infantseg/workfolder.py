"""
Working directory allocation.

Intermediates use fixed names, so two runs must never share a working
directory. When no directory is given, each run takes the next free
`wf_<subject>_NNN` folder under the work root.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Optional, Set


def _pattern(subject: str) -> re.Pattern:
    return re.compile(rf"wf_{re.escape(subject)}_(\d+)$")


def find_existing_workfolders(subject: str, work_root: Path) -> list[Path]:
    """
    Find the existing workfolders of one subject.

    Args:
        subject: Subject id embedded in the folder name.
        work_root: Directory holding the workfolders.

    Returns:
        Matching wf_<subject>_NNN directories, sorted by number.
    """
    if not work_root.exists():
        return []
    pattern = _pattern(subject)
    found = []
    for item in work_root.iterdir():
        if item.is_dir() and pattern.match(item.name):
            found.append(item)

    def get_number(path: Path) -> int:
        match = pattern.match(path.name)
        return int(match.group(1)) if match else 0

    return sorted(found, key=get_number)


def get_next_workfolder(subject: str, work_root: Path) -> Path:
    """
    Get the next workfolder path for a subject without creating it.

    Args:
        subject: Subject id embedded in the folder name.
        work_root: Directory holding the workfolders.

    Returns:
        Path one past the highest existing number, or wf_<subject>_001.
    """
    existing = find_existing_workfolders(subject, work_root)
    next_number = 1
    if existing:
        match = _pattern(subject).match(existing[-1].name)
        if match:
            next_number = int(match.group(1)) + 1
    return work_root / f"wf_{subject}_{next_number:03d}"


def allocate_workfolder(subject: str, work_root: Path) -> Path:
    """
    Create a fresh workfolder for a subject.

    Retries with the next number if another run created the same folder first.

    Args:
        subject: Subject id embedded in the folder name.
        work_root: Directory holding the workfolders; created if missing.

    Returns:
        The newly created directory.
    """
    work_root.mkdir(parents=True, exist_ok=True)
    while True:
        candidate = get_next_workfolder(subject, work_root)
        try:
            candidate.mkdir()
        except FileExistsError:
            continue
        return candidate


def remove_intermediates(work_dir: Path, keep: Optional[Set[str]] = None) -> int:
    """
    Delete everything inside `work_dir` except the names in `keep`.

    Args:
        work_dir: Workfolder to clean.
        keep: Top-level entry names to leave in place.

    Returns:
        Number of entries removed.
    """
    if not work_dir.exists():
        return 0
    keep = keep or set()
    removed = 0
    for item in work_dir.iterdir():
        if item.name in keep:
            continue
        if item.is_dir():
            shutil.rmtree(item)
        else:
            item.unlink()
        removed += 1
    return removed
