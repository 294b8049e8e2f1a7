from __future__ import annotations

import os
import posixpath
import tempfile

from .errors import TransientStorageError


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data: bytes) -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def normalize_object_path(path: str) -> str:
    """Return a clean relative key or raise ValueError if it escapes the root."""
    cleaned = posixpath.normpath((path or "").replace("\\", "/")).lstrip("/")
    if not cleaned or cleaned == "." or cleaned.startswith("../") or cleaned == "..":
        raise ValueError(f"invalid object path: {path!r}")
    return cleaned


class FileSystemObjectStore:
    """Artifact store backed by a directory under SITE_ROOT.

    Objects are addressed by slash separated keys such as
    ``<owner_id>/certificates/<certificate_id>.png``.  ``put`` is the only
    mutation; with ``overwrite=False`` an existing key is treated as a failed
    write so two generation runs never silently share an object.
    """

    def __init__(self, root: str, base_url: str):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")

    def _abs_path(self, key: str) -> str:
        return os.path.join(self.root, *key.split("/"))

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{normalize_object_path(path)}"

    def put(self, path: str, data: bytes, *, overwrite: bool = False) -> str:
        key = normalize_object_path(path)
        target = self._abs_path(key)
        if not overwrite and os.path.exists(target):
            raise TransientStorageError(f"object already exists: {key}")
        try:
            write_atomic(target, data)
        except OSError as exc:
            raise TransientStorageError(f"write failed for {key}: {exc}") from exc
        return self.public_url(key)

    def get(self, path: str) -> bytes:
        key = normalize_object_path(path)
        with open(self._abs_path(key), "rb") as handle:
            return handle.read()
