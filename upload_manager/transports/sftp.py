"""
sftp.py - Upload transport for SFTP content stores

Encapsulates:
1. Connection setup (retried, with connect and channel timeouts)
2. Conflict detection, overwrite and rename directives
3. Throttled, abortable chunked upload through a temporary '.part' file
"""
import logging
import posixpath
import socket
import threading
from typing import Dict, Optional, Tuple

import paramiko

from ..models import DestinationDirective, UploadJob
from ..utils import RateLimitedFile, ThrottledProgressReporter, Timeouts, TransferFailure, retry
from .base import ProgressCallback, Transport, find_available_name

logger = logging.getLogger(__name__)


def sftp_exists(sftp: paramiko.SFTPClient, remote_path: str) -> bool:
    try:
        sftp.stat(remote_path)
        return True
    except FileNotFoundError:
        return False


def sftp_mkdir_p(sftp: paramiko.SFTPClient, remote_path: str) -> None:
    """Recursively creates a directory path on an SFTP server, similar to `mkdir -p`.

    Args:
        sftp: An active Paramiko `SFTPClient` object.
        remote_path: The absolute path of the directory to create on the remote server.

    Raises:
        IOError: If a directory could not be created and was confirmed to not exist.
    """
    if not remote_path or remote_path == '/':
        return
    remote_path = remote_path.replace('\\', '/').rstrip('/')
    try:
        sftp.stat(remote_path)
    except FileNotFoundError:
        sftp_mkdir_p(sftp, posixpath.dirname(remote_path))
        try:
            sftp.mkdir(remote_path)
        except IOError as e:
            # Re-check existence in case another upload created it first
            if not sftp_exists(sftp, remote_path):
                logging.error(f"Failed to create remote directory '{remote_path}': {e}")
                raise


class SFTPTransport(Transport):
    """Uploads job sources to `root_path/<destination>/<file name>` over SFTP.

    One SSH connection is opened per attempt, so concurrent jobs never share
    a channel.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        root_path: str,
        chunk_size: int = 65536,
        max_bytes_per_sec: int = 0,
        progress_interval: float = 0.5,
        connect_timeout: int = Timeouts.SFTP_CONNECT,
        transfer_timeout: int = Timeouts.SFTP_TRANSFER,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.root_path = root_path
        self.chunk_size = chunk_size
        self.max_bytes_per_sec = max_bytes_per_sec
        self.progress_interval = progress_interval
        self.connect_timeout = connect_timeout
        self.transfer_timeout = transfer_timeout
        self._abort_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @retry(tries=2, delay=2, skip=(TransferFailure,))
    def _connect(self) -> Tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
                banner_timeout=30,
            )
            sftp = ssh.open_sftp()
            sftp.get_channel().settimeout(self.transfer_timeout)
        except paramiko.AuthenticationException as e:
            ssh.close()
            raise TransferFailure(f"Permission denied: authentication to {self.host} failed ({e})", status_code=401) from e
        except (paramiko.SSHException, socket.error) as e:
            ssh.close()
            raise ConnectionError(f"Network error connecting to {self.host}:{self.port}: {e}") from e
        return ssh, sftp

    def transfer(self, job: UploadJob, directive: DestinationDirective, on_progress: ProgressCallback) -> Optional[str]:
        if not job.source:
            raise TransferFailure(f"Invalid request: no source file for '{job.file_name}'", status_code=400)

        abort_event = threading.Event()
        with self._lock:
            self._abort_events[job.id] = abort_event

        ssh = sftp = None
        part_path = None
        try:
            ssh, sftp = self._connect()
            remote_dir = posixpath.join(self.root_path, job.destination.strip('/'))
            sftp_mkdir_p(sftp, remote_dir)

            stored_name = job.file_name
            if directive is DestinationDirective.RENAME:
                stored_name = find_available_name(job.file_name, lambda name: sftp_exists(sftp, posixpath.join(remote_dir, name)))
            elif directive is DestinationDirective.NORMAL and sftp_exists(sftp, posixpath.join(remote_dir, stored_name)):
                raise TransferFailure(f"A file named '{stored_name}' already exists in '{job.destination}'", status_code=409)

            remote_path = posixpath.join(remote_dir, stored_name)
            part_path = posixpath.join(remote_dir, f".{stored_name}.{job.id}.part")
            reporter = ThrottledProgressReporter(on_progress, job.file_size_bytes, self.progress_interval)
            loaded = 0

            with open(job.source, 'rb') as raw_source, sftp.open(part_path, 'wb') as remote_f:
                remote_f.set_pipelined(True)
                source_f = RateLimitedFile(raw_source, self.max_bytes_per_sec)
                while True:
                    if abort_event.is_set():
                        raise TransferFailure("Upload was cancelled by user")
                    chunk = source_f.read(self.chunk_size)
                    if not chunk:
                        break
                    remote_f.write(chunk)
                    loaded += len(chunk)
                    reporter.update(loaded)
            reporter.flush()

            remote_size = sftp.stat(part_path).st_size
            if remote_size != job.file_size_bytes:
                raise TransferFailure(
                    f"Size mismatch for '{job.file_name}': expected {job.file_size_bytes} bytes, server has {remote_size}"
                )
            if directive is DestinationDirective.NORMAL and sftp_exists(sftp, remote_path):
                raise TransferFailure(f"A file named '{stored_name}' already exists in '{job.destination}'", status_code=409)
            sftp.posix_rename(part_path, remote_path)
            part_path = None
            logger.debug(f"Uploaded '{job.file_name}' to {self.host}:{remote_path}")
            return stored_name
        except (paramiko.SSHException, EOFError) as e:
            raise ConnectionError(f"Network error during upload of '{job.file_name}': {e}") from e
        finally:
            if sftp is not None:
                if part_path is not None:
                    try:
                        sftp.remove(part_path)
                    except IOError:
                        pass  # never created, or the connection is gone
                sftp.close()
            if ssh is not None:
                ssh.close()
            with self._lock:
                self._abort_events.pop(job.id, None)

    def abort(self, job: UploadJob) -> None:
        with self._lock:
            event = self._abort_events.get(job.id)
        if event is not None:
            event.set()
            logger.debug(f"Abort requested for job {job.id} on {self.host}")
