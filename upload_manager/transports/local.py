"""Transport that stores uploads in a directory tree on the local machine.

The destination root plays the role of the content store: the job's
destination is a folder below the root, files are written to a temporary
`.part` file and moved into place once complete, and an existing file with
the same name is reported as a conflict unless the directive says to
overwrite or rename.
"""
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from ..models import DestinationDirective, UploadJob
from ..utils import RateLimitedFile, ThrottledProgressReporter, TransferFailure
from .base import ProgressCallback, Transport, find_available_name

logger = logging.getLogger(__name__)


class LocalDirectoryTransport(Transport):
    """Copies job sources into `root_dir/<destination>/<file name>`.

    Attributes:
        root_dir: The directory acting as the content store.
        chunk_size: Bytes copied per read.
        max_bytes_per_sec: Upload limit, 0 for unlimited.
        progress_interval: Minimum seconds between two progress ticks.
    """

    def __init__(self, root_dir: Path, chunk_size: int = 65536, max_bytes_per_sec: int = 0, progress_interval: float = 0.0):
        self.root_dir = Path(root_dir)
        self.chunk_size = chunk_size
        self.max_bytes_per_sec = max_bytes_per_sec
        self.progress_interval = progress_interval
        self._abort_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def _resolve_destination(self, destination: str) -> Path:
        root = self.root_dir.resolve()
        target = (root / destination.strip('/\\')).resolve()
        if target != root and root not in target.parents:
            raise TransferFailure(f"Permission denied: destination '{destination}' is outside the content store", status_code=403)
        return target

    def transfer(self, job: UploadJob, directive: DestinationDirective, on_progress: ProgressCallback) -> Optional[str]:
        if not job.source:
            raise TransferFailure(f"Invalid request: no source file for '{job.file_name}'", status_code=400)

        dest_dir = self._resolve_destination(job.destination)
        dest_dir.mkdir(parents=True, exist_ok=True)

        stored_name = job.file_name
        if directive is DestinationDirective.RENAME:
            stored_name = find_available_name(job.file_name, lambda name: (dest_dir / name).exists())
        elif directive is DestinationDirective.NORMAL and (dest_dir / stored_name).exists():
            raise TransferFailure(f"A file named '{stored_name}' already exists in '{job.destination}'", status_code=409)

        target = dest_dir / stored_name
        part_file = dest_dir / f".{stored_name}.{job.id}.part"
        reporter = ThrottledProgressReporter(on_progress, job.file_size_bytes, self.progress_interval)
        loaded = 0
        abort_event = threading.Event()
        with self._lock:
            self._abort_events[job.id] = abort_event
        try:
            with open(job.source, 'rb') as raw_source, open(part_file, 'wb') as dest_f:
                source_f = RateLimitedFile(raw_source, self.max_bytes_per_sec)
                while True:
                    if abort_event.is_set():
                        raise TransferFailure("Upload was cancelled by user")
                    chunk = source_f.read(self.chunk_size)
                    if not chunk:
                        break
                    dest_f.write(chunk)
                    loaded += len(chunk)
                    reporter.update(loaded)
            reporter.flush()

            if loaded != job.file_size_bytes:
                raise TransferFailure(
                    f"Size mismatch for '{job.file_name}': expected {job.file_size_bytes} bytes, read {loaded}"
                )
            if directive is DestinationDirective.NORMAL and target.exists():
                raise TransferFailure(f"A file named '{stored_name}' already exists in '{job.destination}'", status_code=409)
            os.replace(part_file, target)
            logger.debug(f"Stored '{job.file_name}' as '{target}' ({loaded} bytes)")
            return stored_name
        finally:
            if part_file.exists():
                try:
                    part_file.unlink()
                except OSError as e:
                    logger.warning(f"Could not remove partial file '{part_file}': {e}")
            with self._lock:
                self._abort_events.pop(job.id, None)

    def abort(self, job: UploadJob) -> None:
        with self._lock:
            event = self._abort_events.get(job.id)
        if event is not None:
            event.set()
            logger.debug(f"Abort requested for job {job.id}")
