"""
Health of the display computer as seen by the ingestion server.

Transcodes are CPU bound and fill the uploads volume, so the report covers
load, memory, free space where media lands, and how much unprocessed data
is currently sitting in staging areas.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

GIGABYTE = 1024**3


def _gb(value: float) -> float:
    return round(value / GIGABYTE, 1)


def _volume_root(path: Path) -> Optional[Path]:
    """``path`` itself, or the closest ancestor that exists yet."""
    absolute = path.expanduser().absolute()
    for option in (absolute, *absolute.parents):
        try:
            if option.is_dir():
                return option
        except OSError:
            continue
    return None


def _staged_bytes(uploads_dir: Path, staging_subdir: str) -> int:
    total = 0
    try:
        with os.scandir(uploads_dir) as scan:
            folders = [entry for entry in scan if entry.is_dir()]
    except OSError:
        return 0
    for folder in folders:
        try:
            with os.scandir(Path(folder.path) / staging_subdir) as scan:
                for entry in scan:
                    if entry.is_file():
                        total += entry.stat().st_size
        except OSError:
            continue
    return total


def get_system_stats(uploads_dir: Path, staging_subdir: str = ".processing") -> Dict[str, Any]:
    """
    Snapshot CPU, memory and uploads-volume usage.

    Args:
        uploads_dir: Root holding every published folder and its staging area.
        staging_subdir: Name of the per-folder staging directory.

    Returns:
        dict: Values in percent or gigabytes; anything psutil cannot read is None.
    """

    stats: Dict[str, Any] = dict.fromkeys(
        (
            "cpu_percent",
            "load_average",
            "memory_used",
            "memory_total",
            "memory_percent",
            "disk_path",
            "disk_used",
            "disk_total",
            "disk_free",
            "disk_percent",
        )
    )

    try:
        stats["cpu_percent"] = round(psutil.cpu_percent(interval=0.1), 1)
        stats["load_average"] = [round(value, 2) for value in psutil.getloadavg()]
    except (OSError, AttributeError):
        pass

    try:
        memory = psutil.virtual_memory()
    except OSError:
        memory = None
    if memory is not None:
        stats.update(
            memory_used=_gb(memory.used),
            memory_total=_gb(memory.total),
            memory_percent=round(memory.percent, 1),
        )

    volume = _volume_root(Path(uploads_dir))
    if volume is not None:
        stats["disk_path"] = str(volume)
        try:
            disk = psutil.disk_usage(str(volume))
        except OSError:
            disk = None
        if disk is not None:
            stats.update(
                disk_used=_gb(disk.used),
                disk_total=_gb(disk.total),
                disk_free=_gb(disk.free),
                disk_percent=round(disk.percent, 1),
            )

    stats["staging_bytes"] = _staged_bytes(Path(uploads_dir), staging_subdir)
    return stats
