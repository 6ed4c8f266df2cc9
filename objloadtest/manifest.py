"""Object Manifests — Append-only tracking of objects created by a run.

Two manifests live in the run directory so cleanup can delete exactly
what was created::

    .test-objects       objects written by benchmarked push operations
    .cleanup-objects    objects written while priming pull tests

A ``.cleanup-container`` marker records that the container itself was
created by this run.

Usage::

    from objloadtest.manifest import ObjectManifest, TEST_OBJECTS

    manifest = ObjectManifest("/tmp/run1")
    manifest.append(TEST_OBJECTS, "a8f3k2.bin")
    manifest.remove(TEST_OBJECTS, ["a8f3k2.bin"])
"""

from __future__ import annotations

import fcntl
import os
from collections.abc import Iterable
from threading import Lock

from objloadtest.logging_setup import get_logger

TEST_OBJECTS = ".test-objects"
CLEANUP_OBJECTS = ".cleanup-objects"
CONTAINER_MARKER = ".cleanup-container"

MANIFESTS = (CLEANUP_OBJECTS, TEST_OBJECTS)

logger = get_logger()


class ObjectManifest:
    """File-based object tracking with flock-protected writes."""

    def __init__(self, run_dir: str) -> None:
        self.run_dir = run_dir
        self._locks: dict[str, Lock] = {}
        self._lock_lock = Lock()

    def path(self, manifest: str) -> str:
        if manifest not in MANIFESTS and manifest != CONTAINER_MARKER:
            raise ValueError(f"Unknown manifest '{manifest}'")
        return os.path.join(self.run_dir, manifest)

    def _get_lock(self, filepath: str) -> Lock:
        with self._lock_lock:
            if filepath not in self._locks:
                self._locks[filepath] = Lock()
            return self._locks[filepath]

    def append(self, manifest: str, name: str) -> bool:
        """Append an object name to a manifest.

        Returns:
            False if the manifest could not be written (logged).
        """
        filepath = self.path(manifest)
        with self._get_lock(filepath):
            try:
                with open(filepath, "a") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(f"{name}\n")
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            except OSError as exc:
                logger.error(f"Unable to record {name} in {filepath}: {exc}")
                return False
        return True

    def read(self, manifest: str) -> list[str]:
        """Return the object names in a manifest (empty if missing)."""
        filepath = self.path(manifest)
        if not os.path.exists(filepath):
            return []
        with self._get_lock(filepath):
            with open(filepath) as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    return [line.strip() for line in f if line.strip()]
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    def remove(self, manifest: str, names: Iterable[str]) -> None:
        """Remove names from a manifest; the file is deleted once empty."""
        names_set = set(names)
        if not names_set:
            return
        filepath = self.path(manifest)
        if not os.path.exists(filepath):
            return
        with self._get_lock(filepath):
            with open(filepath, "r+") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    lines = [
                        line for line in f
                        if line.strip() and line.strip() not in names_set
                    ]
                    f.seek(0)
                    f.truncate()
                    f.writelines(lines)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            if not lines:
                os.unlink(filepath)

    # ------------------------------------------------------------------
    # Container marker
    # ------------------------------------------------------------------

    def mark_container_created(self) -> None:
        with open(self.path(CONTAINER_MARKER), "a"):
            pass

    def container_created(self) -> bool:
        return os.path.exists(self.path(CONTAINER_MARKER))

    def clear_container_marker(self) -> None:
        if self.container_created():
            os.unlink(self.path(CONTAINER_MARKER))
