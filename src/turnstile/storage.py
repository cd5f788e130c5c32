"""Permission hardening for files that hold session or key material."""

from __future__ import annotations

import os
from pathlib import Path

SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    """Create ``path`` owner-only if missing, then force 0600 on it."""
    fd = os.open(path, os.O_CREAT | os.O_WRONLY, 0o600)
    os.close(fd)
    os.chmod(path, 0o600)


def harden_sqlite_files(db_path: Path) -> list[Path]:
    """
    Restrict a SQLite database and whichever sidecar files exist beside it.

    WAL mode writes session rows to ``<db>-wal`` before checkpointing, and
    those files inherit the process umask rather than the database's mode.
    """
    hardened = []
    for candidate in [db_path] + [Path(f"{db_path}{s}") for s in SQLITE_SIDECARS]:
        if candidate.exists():
            os.chmod(candidate, 0o600)
            hardened.append(candidate)
    return hardened
