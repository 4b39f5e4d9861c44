"""Shared utility functions for nodeflow core modules."""

import os
import secrets
import time
from pathlib import Path


class PathSecurityError(Exception):
    """Path resolves outside the vault."""

    pass


def now_ms() -> int:
    """Current time as integer milliseconds since the Unix epoch."""
    return int(time.time() * 1000)


def new_run_id() -> str:
    return f"run-{now_ms()}-{secrets.token_hex(3)}"


def resolve_vault_path(file_path: str, vault_root: Path) -> Path:
    """Resolve a vault-relative path to an absolute path inside the vault.

    ./notes/a.md, notes/a.md and /abs/vault/notes/a.md all resolve to the
    same file. Paths that escape the vault (``../x``, absolute paths
    elsewhere, symlinks pointing out) are rejected.

    Args:
        file_path: File path (relative or absolute)
        vault_root: Vault root directory

    Returns:
        Resolved absolute path

    Raises:
        PathSecurityError: If the path resolves outside the vault
    """
    path = Path(file_path)
    resolved_root = vault_root.resolve()

    resolved = path.resolve() if path.is_absolute() else (resolved_root / path).resolve()

    try:
        resolved.relative_to(resolved_root)
    except ValueError:
        raise PathSecurityError(
            f"Path '{file_path}' resolves outside vault root '{resolved_root}'"
        ) from None
    return resolved


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` through a sibling temp file and rename.

    Readers never observe a half-written file. If the rename fails (some
    platforms refuse to replace an existing file) the target is unlinked
    and the rename retried once.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    try:
        os.replace(tmp_path, path)
    except OSError:
        path.unlink(missing_ok=True)
        os.replace(tmp_path, path)
