from pathlib import Path
from typing import List, Optional, Tuple, Union
import logging
import os
import shutil

from config import FILE_STORE_ROOT

logger = logging.getLogger(__name__)


class FileStoreError(Exception):
    pass


def _safe_join(base: Path, rel: str) -> Path:
    target = (base / rel.lstrip("/")).resolve()
    if target != base and not str(target).startswith(str(base) + os.sep):
        raise FileStoreError(f"Invalid path: {rel}")
    return target


class LocalFileStore:
    """Shared file store rooted at a local (usually network mounted) directory.

    Paths are store-absolute POSIX strings such as ``/servers/alice/abc``.
    """

    def __init__(self, root: Union[str, Path] = FILE_STORE_ROOT):
        self.root = Path(root).resolve()

    def host_path(self, path: str) -> Path:
        return _safe_join(self.root, path)

    def exists(self, path: str) -> bool:
        return self.host_path(path).exists()

    def create_directory(self, path: str) -> None:
        self.host_path(path).mkdir(parents=True, exist_ok=True)

    def upload_file(self, path: str, content: Union[str, bytes]) -> None:
        target = self.host_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(content)
        os.replace(tmp, target)

    def get_file_contents(self, path: str) -> str:
        target = self.host_path(path)
        if not target.is_file():
            raise FileStoreError(f"File not found: {path}")
        return target.read_text(encoding="utf-8", errors="replace")

    def get_directory_contents(self, path: str) -> List[dict]:
        target = self.host_path(path)
        if not target.is_dir():
            raise FileStoreError(f"Directory not found: {path}")
        items = []
        for entry in sorted(target.iterdir(), key=lambda p: p.name):
            items.append({
                "name": entry.name,
                "is_dir": entry.is_dir(),
                "size": entry.stat().st_size if entry.is_file() else 0,
            })
        return items

    def move_file(self, source: str, destination: str) -> None:
        src = self.host_path(source)
        dst = self.host_path(destination)
        if not src.exists():
            raise FileStoreError(f"Source does not exist: {source}")
        if dst.exists():
            raise FileStoreError(f"Destination already exists: {destination}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        # os.rename fails across devices; that is what the copy fallback is for
        os.rename(src, dst)

    def copy_directory(self, source: str, destination: str) -> None:
        src = self.host_path(source)
        dst = self.host_path(destination)
        if not src.is_dir():
            raise FileStoreError(f"Source directory does not exist: {source}")
        shutil.copytree(src, dst)

    def delete_directory(self, path: str) -> bool:
        """Recursively delete a directory. Returns False when it was already gone."""
        target = self.host_path(path)
        if not target.exists():
            return False
        if target == self.root:
            raise FileStoreError("Refusing to delete the store root")
        shutil.rmtree(target)
        return True

    def delete_file(self, path: str) -> bool:
        target = self.host_path(path)
        if not target.exists():
            return False
        target.unlink()
        return True


def archive_directory(store, source: str, destination: str) -> Tuple[str, str]:
    """Move ``source`` to ``destination`` using the first method that works.

    Tries a plain move, then copy-then-delete, then a rename to a suffixed
    sibling when ``destination`` is taken. Returns ``(method, final_path)``
    and raises FileStoreError when all of them fail.
    """
    errors = []

    try:
        store.move_file(source, destination)
        return "move", destination
    except Exception as e:
        errors.append(f"move: {e}")
        logger.warning(f"Archive move {source} -> {destination} failed: {e}")

    try:
        store.copy_directory(source, destination)
        store.delete_directory(source)
        return "copy_delete", destination
    except Exception as e:
        errors.append(f"copy_delete: {e}")
        logger.warning(f"Archive copy {source} -> {destination} failed: {e}")

    fallback: Optional[str] = None
    try:
        parent = source.rstrip("/").rsplit("/", 1)[0] or "/"
        base = destination.rstrip("/").rsplit("/", 1)[-1]
        for attempt in range(1, 100):
            candidate = f"{parent.rstrip('/')}/{base}-{attempt}"
            if not store.exists(candidate):
                fallback = candidate
                break
        if fallback is None:
            raise FileStoreError("no free archive name")
        store.move_file(source, fallback)
        return "rename_fallback", fallback
    except Exception as e:
        errors.append(f"rename_fallback: {e}")

    raise FileStoreError("; ".join(errors))
