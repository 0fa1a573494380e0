import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Union

from errors import PersistenceError


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class FileStore:
    """Durable store of whole-file records.

    Writes go to a temporary file in the target directory and are moved into
    place with ``os.replace``, so a reader never observes a half-written file.
    """

    def __init__(self, root: PathLike = '.'):
        self.root = Path(root)
        self._created_dirs = set()

    def resolve(self, path: PathLike) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.root / path

    def exists(self, path: PathLike) -> bool:
        return self.resolve(path).is_file()

    def read_all(self, path: PathLike) -> bytes:
        target = self.resolve(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise PersistenceError(f"Unable to read {target}: {exc}", path=str(target)) from exc

    def write_all(self, path: PathLike, payload: bytes) -> None:
        target = self.resolve(path)
        directory = target.parent
        tmp_name = None
        try:
            if directory not in self._created_dirs:
                if not directory.exists():
                    directory.mkdir(parents=True, exist_ok=True)
                    logger.info("Created directory: %s", directory)
                self._created_dirs.add(directory)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix='.tmp', dir=directory)
            with os.fdopen(fd, 'wb') as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            raise PersistenceError(f"Unable to write {target}: {exc}", path=str(target)) from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def read_json(self, path: PathLike) -> Any:
        """Return the decoded JSON document at ``path``, or ``None`` when it does not exist."""
        if not self.exists(path):
            return None
        raw = self.read_all(path)
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as exc:
            raise PersistenceError(f"Corrupt JSON in {self.resolve(path)}: {exc}", path=str(path)) from exc

    def write_json(self, path: PathLike, document: Any) -> None:
        self.write_all(path, json.dumps(document, indent=2).encode('utf-8'))
