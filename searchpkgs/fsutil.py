"""Filesystem helpers: deadlines, tree copies and reproducible normalization."""

from __future__ import annotations

import os
import shutil
import stat
from collections.abc import Callable
from pathlib import Path
from time import monotonic
from typing import Literal

from searchpkgs.errors import OperationTimeout

LinkMode = Literal["copy", "hardlink"]
REPRODUCIBLE_MTIME = 1
_EXECUTABLE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class Deadline:
    """Wall-clock budget shared by the steps of one operation."""

    def __init__(self, timeout: float | None, *, package: str, version: str | None = None) -> None:
        self.timeout = timeout
        self.package = package
        self.version = version
        self._expires_at = None if timeout is None else monotonic() + max(0.0, timeout)

    def remaining(self) -> float | None:
        """Seconds left, or ``None`` when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - monotonic())

    def expired(self) -> bool:
        return self._expires_at is not None and monotonic() >= self._expires_at

    def check(self, step: str) -> None:
        """Raise ``OperationTimeout`` once the budget is spent."""
        if self.expired():
            raise OperationTimeout(
                f"{step} exceeded timeout of {self.timeout}s",
                package=self.package,
                version=self.version,
            )


def _add_owner_write(path: Path) -> None:
    mode = path.lstat().st_mode
    if not mode & stat.S_IWUSR:
        path.chmod(stat.S_IMODE(mode) | stat.S_IWUSR)


def _retry_writable(func: Callable[..., object], path: str, exc: BaseException) -> None:
    if not isinstance(exc, PermissionError):
        raise exc
    parent = Path(path).parent
    _add_owner_write(parent)
    target = Path(path)
    if target.exists() and not target.is_symlink():
        target.chmod(stat.S_IRWXU)
    func(path)


def remove_tree(path: Path) -> None:
    """Delete a tree, including read-only store trees; missing paths are ignored."""
    if path.is_symlink() or path.is_file():
        _add_owner_write(path.parent)
        path.unlink()
        return
    if not path.exists():
        return
    shutil.rmtree(path, onexc=_retry_writable)


def copy_entry(source: Path, destination: Path, *, link_mode: LinkMode = "copy", writable: bool = True) -> None:
    """Copy one file or symlink, replacing whatever is at ``destination``."""
    if destination.is_dir() and not destination.is_symlink():
        remove_tree(destination)
    elif destination.exists() or destination.is_symlink():
        destination.unlink()
    if source.is_symlink():
        os.symlink(os.readlink(source), destination)
    elif link_mode == "hardlink":
        os.link(source, destination)
    else:
        shutil.copy2(source, destination)
        if writable:
            _add_owner_write(destination)


def _prune_missing(directory: Path, keep: set[str]) -> None:
    for stale in sorted(directory.iterdir()):
        if stale.name not in keep:
            remove_tree(stale)


def copy_tree(
    source: Path,
    destination: Path,
    *,
    deadline: Deadline | None = None,
    link_mode: LinkMode = "copy",
    overwrite: bool = True,
    writable: bool = True,
    prune: bool = False,
) -> int:
    """Copy ``source`` into ``destination`` and return the number of entries copied.

    Symlinks are recreated as symlinks. In ``hardlink`` mode file modes are left
    untouched since the inode is shared with the source. With ``prune`` the
    destination ends up mirroring ``source``: entries it lacks are deleted.
    """
    destination.mkdir(parents=True, exist_ok=True)
    if writable:
        _add_owner_write(destination)
    copied = 0
    for root, dirnames, filenames in os.walk(source):
        root_path = Path(root)
        target_root = destination / root_path.relative_to(source)
        target_root.mkdir(exist_ok=True)
        if writable:
            _add_owner_write(target_root)
        if prune:
            _prune_missing(target_root, {*dirnames, *filenames})

        linked_dirs = sorted(name for name in dirnames if (root_path / name).is_symlink())
        dirnames[:] = sorted(name for name in dirnames if name not in linked_dirs)
        for name in sorted(filenames) + linked_dirs:
            if deadline is not None:
                deadline.check("copy")
            src = root_path / name
            dst = target_root / name
            if (dst.exists() or dst.is_symlink()) and not overwrite:
                continue
            copy_entry(src, dst, link_mode=link_mode, writable=writable)
            copied += 1
    return copied


def mark_executable(path: Path) -> None:
    """Add execute bits to every regular file below ``path``."""
    for candidate in sorted(path.rglob("*")):
        if candidate.is_file() and not candidate.is_symlink():
            mode = stat.S_IMODE(candidate.stat().st_mode)
            candidate.chmod(mode | _EXECUTABLE_BITS)


def normalize_tree(root: Path, *, mtime: int = REPRODUCIBLE_MTIME, read_only: bool = True) -> None:
    """Pin modification times and permissions so equal inputs give equal trees."""
    follow_ok = os.utime in os.supports_follow_symlinks
    for current, dirnames, filenames in os.walk(root, topdown=False):
        current_path = Path(current)
        for name in [*filenames, *dirnames]:
            entry = current_path / name
            if entry.is_symlink():
                if follow_ok:
                    os.utime(entry, (mtime, mtime), follow_symlinks=False)
                continue
            if entry.is_dir():
                continue
            mode = stat.S_IMODE(entry.stat().st_mode)
            if read_only:
                entry.chmod(0o555 if mode & stat.S_IXUSR else 0o444)
            else:
                entry.chmod(0o755 if mode & stat.S_IXUSR else 0o644)
            os.utime(entry, (mtime, mtime))
        current_path.chmod(0o555 if read_only else 0o755)
        os.utime(current_path, (mtime, mtime))
