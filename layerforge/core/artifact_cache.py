"""Per-stage artifact cache keyed by resolved stage inputs.

Storage layout::

    {root}/{stage}/{key[0:2]}/{key}/CURRENT
    {root}/{stage}/{key[0:2]}/{key}/entries/{entry_id}/entry.json
    {root}/{stage}/{key[0:2]}/{key}/entries/{entry_id}/tree/...

An entry is assembled in a hidden temp directory and renamed into place
before ``CURRENT`` is atomically replaced to point at it, so readers never
observe a partial write.  Concurrent writers for the same key each build
their own entry; whichever pointer swap lands last wins.  There is no
delete method: superseded entries stay on disk until collected externally.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from layerforge.core.hasher import fingerprint_tree
from layerforge.models.artifacts import ArtifactKind, ArtifactRef, CacheEntry

logger = logging.getLogger(__name__)

_POINTER = "CURRENT"
_METADATA = "entry.json"
_TREE = "tree"


class CacheCorruptionError(RuntimeError):
    """A claimed cache location is unreadable, partial or fails its digest.

    Never propagated out of ``ArtifactCache.lookup``: it degrades to a miss.
    """


class ArtifactCache:
    """Content-verified store of stage output trees.

    Parameters
    ----------
    root:
        Root directory for cache storage.
    verify:
        Re-fingerprint cached trees on lookup.  Disable only for trusted,
        read-only cache roots.
    """

    def __init__(self, root: Path, *, verify: bool = True) -> None:
        self._root = Path(root)
        self._verify = verify

    @property
    def root(self) -> Path:
        return self._root

    def _key_dir(self, stage: str, key: str) -> Path:
        return self._root / stage / key[:2] / key

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, stage: str, key: str) -> ArtifactRef | None:
        """Return the cached stage tree for *key*, or ``None`` on a miss.

        Missing, partial, garbage-collected or tampered entries are all
        reported as misses.
        """
        try:
            entry = self._load(stage, key)
        except CacheCorruptionError as exc:
            logger.warning("Cache entry %s/%s unusable, treating as miss: %s", stage, key[:12], exc)
            return None
        if entry is None:
            logger.debug("Cache miss for %s/%s", stage, key[:12])
            return None
        logger.info("Cache hit for %s/%s (entry %s)", stage, key[:12], entry.entry_id[:8])
        return ArtifactRef(
            name=stage,
            producer=stage,
            kind=ArtifactKind.STAGE_OUTPUT,
            path=entry.path,
            digest=entry.digest,
        )

    def get_entry(self, stage: str, key: str) -> CacheEntry | None:
        """Like ``lookup`` but returns the ``CacheEntry`` metadata."""
        try:
            return self._load(stage, key)
        except CacheCorruptionError:
            return None

    def _load(self, stage: str, key: str) -> CacheEntry | None:
        key_dir = self._key_dir(stage, key)
        pointer = key_dir / _POINTER
        if not pointer.exists():
            return None

        try:
            entry_id = pointer.read_text(encoding="utf-8").strip()
        except (OSError, ValueError) as exc:
            raise CacheCorruptionError(f"unreadable pointer: {exc}") from exc
        if not entry_id:
            raise CacheCorruptionError("empty pointer")
        if not entry_id.isprintable() or "/" in entry_id:
            raise CacheCorruptionError(f"malformed pointer {entry_id!r}")

        entry_dir = key_dir / "entries" / entry_id
        try:
            raw = (entry_dir / _METADATA).read_text(encoding="utf-8")
        except (OSError, ValueError) as exc:
            raise CacheCorruptionError(f"entry {entry_id} metadata missing: {exc}") from exc
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            raise CacheCorruptionError(f"entry {entry_id} metadata invalid") from exc

        if entry.stage != stage or entry.key != key or entry.entry_id != entry_id:
            raise CacheCorruptionError(f"entry {entry_id} metadata does not match its location")

        tree = entry_dir / _TREE
        if not tree.is_dir():
            raise CacheCorruptionError(f"entry {entry_id} tree missing")
        if self._verify:
            try:
                actual = fingerprint_tree(tree)
            except (OSError, ValueError) as exc:
                raise CacheCorruptionError(f"entry {entry_id} tree unreadable: {exc}") from exc
            if actual != entry.digest:
                raise CacheCorruptionError(
                    f"entry {entry_id} digest mismatch: expected {entry.digest}, got {actual}"
                )
        return entry.model_copy(update={"path": tree})

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, stage: str, key: str, tree: Path) -> CacheEntry:
        """Copy *tree* into the cache under (*stage*, *key*) and publish it.

        Returns the new ``CacheEntry``.  The source tree is left untouched.
        """
        digest = fingerprint_tree(tree)
        key_dir = self._key_dir(stage, key)
        entries_dir = key_dir / "entries"
        entries_dir.mkdir(parents=True, exist_ok=True)

        entry = CacheEntry(stage=stage, key=key, digest=digest)
        tmp = entries_dir / f".tmp-{uuid.uuid4().hex}"
        try:
            shutil.copytree(tree, tmp / _TREE, symlinks=True)
            (tmp / _METADATA).write_text(
                entry.model_dump_json(exclude={"path"}), encoding="utf-8"
            )
            final = entries_dir / entry.entry_id
            os.rename(tmp, final)
        except BaseException:
            shutil.rmtree(tmp, ignore_errors=True)
            raise

        pointer_tmp = key_dir / f".{_POINTER}.{uuid.uuid4().hex}"
        pointer_tmp.write_text(entry.entry_id, encoding="utf-8")
        os.replace(pointer_tmp, key_dir / _POINTER)

        logger.info("Cached %s/%s as entry %s (%s)", stage, key[:12], entry.entry_id[:8], digest)
        return entry.model_copy(update={"path": final / _TREE})

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def exists(self, stage: str, key: str) -> bool:
        """True iff *key* has a current entry that ``lookup`` would return."""
        return self.get_entry(stage, key) is not None

    def entries(self, stage: str | None = None) -> Iterator[CacheEntry]:
        """Yield the current, readable entry for every key (optionally one stage)."""
        if not self._root.is_dir():
            return
        stage_dirs = [self._root / stage] if stage else sorted(
            p for p in self._root.iterdir() if p.is_dir()
        )
        for stage_dir in stage_dirs:
            if not stage_dir.is_dir():
                continue
            for pointer in sorted(stage_dir.glob(f"*/*/{_POINTER}")):
                key = pointer.parent.name
                try:
                    entry = self._load(stage_dir.name, key)
                except CacheCorruptionError as exc:
                    logger.warning("Skipping unusable cache entry %s/%s: %s", stage_dir.name, key[:12], exc)
                    continue
                if entry is not None:
                    yield entry
