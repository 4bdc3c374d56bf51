"""Lock-protected JSON documents shared between processes.

The relay, the agent-side hook and any short-lived utility only share the
filesystem. Every mutation goes through :meth:`JsonFileStore.transaction`,
which holds an exclusive marker file (``<path>.lock``) for the duration of
one read-modify-write. Reads done through :meth:`JsonFileStore.read` skip
the lock and may be stale.
"""

import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_LOCK_WAIT = 2.0
DEFAULT_RETRY_INTERVAL = 0.015
DEFAULT_FILE_MODE = 0o600


class LockTimeoutError(TimeoutError):
    """The lock marker could not be created within the wait budget."""

    def __init__(self, path: Path, waited: float):
        super().__init__(f"lock timeout on {path} after {waited:.3f}s")
        self.path = path
        self.waited = waited


class JsonFileStore:
    """A JSON document on disk guarded by a sibling ``.lock`` marker."""

    def __init__(
        self,
        path: Path | str,
        *,
        default: Callable[[], Any] = dict,
        lock_wait: float = DEFAULT_LOCK_WAIT,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        file_mode: int = DEFAULT_FILE_MODE,
    ):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._default = default
        self.lock_wait = lock_wait
        self.retry_interval = retry_interval
        self.file_mode = file_mode

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the marker file; raises :class:`LockTimeoutError` on budget exhaustion."""
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, self.file_mode)
            except FileExistsError:
                waited = time.monotonic() - start
                if waited >= self.lock_wait:
                    logger.warning(f"Lock wait budget exhausted for {self.lock_path}")
                    raise LockTimeoutError(self.lock_path, waited)
                time.sleep(self.retry_interval)
                continue
            break

        try:
            os.close(fd)
            yield
        finally:
            try:
                os.unlink(self.lock_path)
            except FileNotFoundError:
                logger.warning(f"Lock marker {self.lock_path} vanished while held")

    def transaction(self, fn: Callable[[Any], tuple[Any, T]]) -> T:
        """Run ``fn(document)`` under the lock.

        ``fn`` returns ``(new_document, result)``; pass ``None`` as the new
        document to skip the write. The document is rewritten in one piece.
        """
        with self.lock():
            document = self._load()
            new_document, result = fn(document)
            if new_document is not None:
                self._write(new_document)
            return result

    def read(self) -> Any:
        """Best-effort read without the lock; may observe a stale document."""
        return self._load()

    def _load(self) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return self._default()
        except (OSError, ValueError) as e:
            logger.warning(f"Treating unreadable store {self.path} as empty: {e}")
            return self._default()

    def _write(self, document: Any) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        payload = json.dumps(document, indent=2, ensure_ascii=False)
        fd = os.open(tmp_path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, self.file_mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        # creation mode is filtered through the umask
        os.chmod(tmp_path, self.file_mode)
        os.replace(tmp_path, self.path)
