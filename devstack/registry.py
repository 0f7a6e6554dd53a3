"""On-disk name=pid registry shared between invocations."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger("devstack.registry")


class ProcessRegistry:
    """Append-only during a start, read once during stop/status.

    The file's existence means a start was attempted and not yet stopped.
    There is no locking; concurrent starts are refused by the existence check.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def create(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("", encoding="utf-8")

    def save(self, name: str, pid: int) -> None:
        if "=" in name or "\n" in name:
            raise ValueError(f"invalid process name: {name!r}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{name}={int(pid)}\n")
        logger.debug("Registered %s (PID: %s) in %s", name, pid, self.path)

    def load_all(self) -> dict[str, int]:
        """Return name -> pid; a missing file means nothing is tracked."""
        if not self.path.exists():
            return {}
        entries: dict[str, int] = {}
        for line_no, raw_line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue
            name, sep, value = line.partition("=")
            try:
                pid = int(value.strip())
            except ValueError:
                pid = 0
            if not sep or not name.strip() or pid <= 0:
                logger.warning("Ignoring malformed registry line %s in %s: %r", line_no, self.path, raw_line)
                continue
            entries[name.strip()] = pid
        return entries

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
