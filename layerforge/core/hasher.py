"""Canonical hashing helpers for cache keys and tree fingerprints.

Every digest in Layerforge is SHA-256 over canonical JSON (sorted keys,
compact separators, ASCII) so that keys are stable across interpreters and
platforms.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from layerforge.models.stages import StageDefinition
from layerforge.models.variant import VariantDescriptor

_CHUNK = 1024 * 1024

# Directory names never part of an input fingerprint.
DEFAULT_EXCLUDES: frozenset[str] = frozenset({".git", "node_modules", "__pycache__"})


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact separators."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def fingerprint_tree(root: Path, *, exclude: frozenset[str] = frozenset()) -> str:
    """Content digest of a file or directory tree.

    Covers relative paths, entry types, file contents, symlink targets and
    the owner-execute bit.  Directories named in *exclude* are skipped
    entirely.  Ownership, timestamps and group/other mode bits
    are deliberately excluded: they are normalized after composition and
    must not perturb cache identity.
    """
    root = Path(root)
    if root.is_file():
        return content_address({"file": file_sha256(root)})

    records: list[list[str]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in exclude)
        rel_dir = os.path.relpath(dirpath, root)
        for name in dirnames:
            full = os.path.join(dirpath, name)
            rel = os.path.normpath(os.path.join(rel_dir, name))
            if os.path.islink(full):
                records.append([rel, "link", os.readlink(full)])
            else:
                records.append([rel, "dir", ""])
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            rel = os.path.normpath(os.path.join(rel_dir, name))
            if os.path.islink(full):
                records.append([rel, "link", os.readlink(full)])
                continue
            mode = os.stat(full).st_mode
            kind = "exec" if mode & stat.S_IXUSR else "file"
            records.append([rel, kind, file_sha256(Path(full))])
    records.sort()
    return content_address(records)


def compute_cache_key(
    stage: StageDefinition,
    descriptor: VariantDescriptor,
    source_fingerprints: Mapping[str, str],
    upstream_digests: Mapping[str, str],
) -> str:
    """SHA-256 of canonical(stage identity + effective inputs).

    Only the descriptor fields the stage's actions condition on or read are
    included, so unrelated variant changes (including ``build_identifier``
    for stages that never stamp it) do not invalidate the stage.
    """
    payload = {
        "stage": stage.name,
        "actions_version": stage.actions_version,
        "actions": [action.name for action in stage.actions],
        "sources": dict(source_fingerprints),
        "upstream": dict(upstream_digests),
        "variant": descriptor.subset(stage.variant_fields),
    }
    return sha256_hex(canonical_json_bytes(payload))
