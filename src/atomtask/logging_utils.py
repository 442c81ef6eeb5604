"""Configure loguru output and summarize snapshots for log lines."""

from __future__ import annotations

import sys
from typing import Any, Optional, TextIO

from loguru import logger

from .models import TaskSnapshot

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "<level>{level: <8}</level> "
    "<cyan>{name}</cyan>: <level>{message}</level>"
)


def configure_logging(level: str = "INFO", sink: Optional[TextIO] = None) -> int:
    """Replace loguru's default handler with a single formatted sink.

    Args:
        level: Minimum level name (``DEBUG``, ``INFO``...).
        sink: Stream to write to. Defaults to stderr.

    Returns:
        The loguru handler id, usable with ``logger.remove()``.
    """
    logger.remove()
    return logger.add(
        sink if sink is not None else sys.stderr,
        level=level.upper(),
        format=LOG_FORMAT,
        colorize=sink is None,
    )


def summarize_snapshot(snapshot: Optional[TaskSnapshot]) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a task snapshot."""
    if snapshot is None:
        return {"task": None}

    counts: dict[str, int] = {}
    for atom in snapshot.atom_tasks:
        counts[atom.status.value] = counts.get(atom.status.value, 0) + 1

    d: dict[str, Any] = {
        "task": snapshot.id,
        "status": snapshot.status.value,
        "percent": round(snapshot.percent, 2),
        "atoms": counts,
    }
    if snapshot.name:
        d["name"] = snapshot.name
    if snapshot.error is not None:
        d["error"] = f"{snapshot.error.name}: {snapshot.error.message}"
    return d
