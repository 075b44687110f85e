"""Identity & permission normalization of the composed tree.

Always: every entry (root included) is owned by ``(owner_uid, owner_gid)``.

With permission hardening: every non-symlink entry gains group ``rwX``
(execute only for directories and already-executable files) and every
directory gains the set-group-ID bit, so entries created later under an
arbitrary runtime UID inherit the group and stay group-accessible.

Runs once, after composition: per-stage trees may be produced under other
intermediate identities.
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Callable, Iterator
from pathlib import Path

from layerforge.models.artifacts import ArtifactRef
from layerforge.models.variant import VariantDescriptor

logger = logging.getLogger(__name__)

_ANY_EXEC = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


class NormalizationError(RuntimeError):
    """Ownership or mode could not be applied to an entry."""


def hardened_mode(mode: int) -> int:
    """Return *mode* widened to group ``rwX`` (+ setgid for directories)."""
    new = mode | stat.S_IRGRP | stat.S_IWGRP
    if stat.S_ISDIR(mode):
        new |= stat.S_IXGRP | stat.S_ISGID
    elif mode & _ANY_EXEC:
        new |= stat.S_IXGRP
    return stat.S_IMODE(new)


def _walk(root: Path) -> Iterator[Path]:
    yield root
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            yield Path(dirpath) / name


class IdentityNormalizer:
    """Applies the owning identity and, optionally, hardened group modes.

    Parameters
    ----------
    chown:
        ``chown(path, uid, gid)`` that must not follow symlinks.  Defaults
        to ``os.lchown``.
    """

    def __init__(self, chown: Callable[[str | Path, int, int], None] | None = None) -> None:
        self._chown = chown or os.lchown

    def normalize(self, tree: ArtifactRef, descriptor: VariantDescriptor) -> ArtifactRef:
        if tree.path is None or not tree.path.exists():
            raise NormalizationError(f"Tree {tree.name!r} is not materialised")

        uid, gid = descriptor.owner_uid, descriptor.owner_gid
        hardening = descriptor.permission_hardening
        count = 0
        for path in _walk(tree.path):
            try:
                # Ownership first: chown may clear set-group-ID bits.
                self._chown(path, uid, gid)
                st = os.lstat(path)
                if hardening and not stat.S_ISLNK(st.st_mode):
                    os.chmod(path, hardened_mode(st.st_mode))
            except OSError as exc:
                raise NormalizationError(f"Cannot normalize {path}: {exc}") from exc
            count += 1

        logger.info(
            "Normalized %d entries under %s to %d:%d (hardening=%s)",
            count, tree.path, uid, gid, hardening,
        )
        return tree
