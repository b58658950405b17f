import math
import time
import logging
import os
from functools import wraps
from pathlib import Path
from typing import Callable, Any, Optional, Tuple, Type


class Timeouts:
    SFTP_CONNECT = int(os.getenv('UM_SFTP_CONNECT_TIMEOUT', '10'))
    SFTP_TRANSFER = int(os.getenv('UM_SFTP_TIMEOUT', '300'))


def retry(tries: int = 2, delay: int = 5, backoff: int = 1, skip: Tuple[Type[BaseException], ...] = ()) -> Callable:
    """Creates a decorator that retries a function call.

    This decorator will re-invoke the decorated function upon exceptions up to
    a specified number of times, with an optional exponential backoff.

    Args:
        tries: The maximum number of attempts.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay should be multiplied after each
            failed attempt. A value of 1 results in a fixed delay.
        skip: Exception types that are re-raised at once without retrying.

    Returns:
        A decorator that can be applied to a function.
    """
    def deco_retry(f: Callable) -> Callable:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _tries, _delay = tries, delay
            for attempt in range(1, _tries + 1):
                try:
                    return f(*args, **kwargs)
                except skip:
                    raise
                except Exception as e:
                    if attempt == _tries:
                        logging.error(f"'{f.__name__}' failed on the final attempt ({attempt}/{_tries}): {e}")
                        raise

                    msg = (f"'{f.__name__}' failed with '{e}'. Attempt {attempt}/{_tries}. "
                           f"Retrying in {_delay} seconds...")
                    logging.warning(msg)
                    time.sleep(_delay)
                    _delay *= backoff
        return f_retry
    return deco_retry


class RemoteTransferError(Exception):
    """Custom exception for remote transfer failures."""
    pass


class TransferFailure(RemoteTransferError):
    """A transfer failure reported by a transport.

    Attributes:
        status_code: HTTP-like status code describing the failure, if known.
    """
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def format_bytes(num_bytes: float) -> str:
    """Formats a byte count using binary units, e.g. '100.0 MB'."""
    if num_bytes >= 1024 ** 3:
        return f"{num_bytes / (1024 ** 3):.1f} GB"
    elif num_bytes >= 1024 ** 2:
        return f"{num_bytes / (1024 ** 2):.1f} MB"
    elif num_bytes >= 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes:.0f} B"


def format_speed(bytes_per_sec: float) -> str:
    return f"{format_bytes(bytes_per_sec)}/s"


def format_eta(seconds: Optional[float]) -> str:
    """Formats an ETA the way the progress panel shows it ('45s', '3m', '2h')."""
    if seconds is None:
        return "calculating..."
    if seconds < 60:
        return f"{math.ceil(seconds)}s"
    minutes = seconds / 60
    if minutes < 60:
        return f"{math.ceil(minutes)}m"
    return f"{math.ceil(minutes / 60)}h"


class RateLimitedFile:
    """Wraps a file-like object to throttle read and write operations.

    This class acts as a proxy to a file object, inserting delays into read()
    and write() calls to ensure that the data transfer rate does not exceed a
    specified maximum.

    Attributes:
        file: The underlying file-like object (e.g., from `open()` or SFTP).
        max_bytes_per_sec: The maximum desired transfer speed in bytes per second.
    """
    def __init__(self, file_obj: Any, max_bytes_per_sec: float):
        """Initializes the RateLimitedFile wrapper.

        Args:
            file_obj: The file-like object to wrap.
            max_bytes_per_sec: The maximum transfer speed in bytes per second.
                If 0 or None, the limit is infinite (no throttling).
        """
        self.file = file_obj
        self.max_bytes_per_sec = max_bytes_per_sec if max_bytes_per_sec else float('inf')
        self.last_time = time.time()
        self.bytes_since_last = 0

    def read(self, size: int = -1) -> bytes:
        data = self.file.read(size)
        self._throttle(len(data))
        return data

    def write(self, data: bytes) -> int:
        bytes_written = self.file.write(data)
        if bytes_written:
            self._throttle(bytes_written)
        return bytes_written

    def _throttle(self, bytes_transferred: int) -> None:
        if self.max_bytes_per_sec == float('inf'):
            return

        self.bytes_since_last += bytes_transferred
        elapsed = time.time() - self.last_time

        if elapsed > 0:
            required_time = self.bytes_since_last / self.max_bytes_per_sec
            sleep_time = required_time - elapsed
            if sleep_time > 0:
                time.sleep(sleep_time)

        if elapsed >= 1.0:
            self.last_time = time.time()
            self.bytes_since_last = 0

    def __getattr__(self, attr: str) -> Any:
        """Proxy other attributes to the wrapped file object."""
        return getattr(self.file, attr)


class ThrottledProgressReporter:
    """Delays progress callbacks to avoid flooding the engine on high-frequency loops.

    Transports call `update()` for every chunk. The wrapped callback fires at
    most once per `update_interval`, except that the final tick (loaded equals
    total) is always delivered immediately.
    """
    def __init__(self, callback: Callable[[int, int], None], total: int, update_interval: float = 0.5):
        self.callback = callback
        self.total = total
        self.update_interval = update_interval
        self.last_update_time = time.monotonic()
        self.loaded = 0
        self._reported = 0

    def update(self, loaded: int) -> None:
        self.loaded = loaded
        now = time.monotonic()
        if loaded >= self.total or now - self.last_update_time >= self.update_interval:
            self.flush()

    def flush(self) -> None:
        if self.loaded > self._reported:
            self.callback(self.loaded, self.total)
            self._reported = self.loaded
            self.last_update_time = time.monotonic()


def setup_logging(log_dir: Path, debug: bool) -> Path:
    """Configures the root logger for file-based logging.

    A log file named with the current timestamp is created in `log_dir`.
    Console logging (RichHandler or StreamHandler) is configured separately
    by the command line entry point.

    Args:
        log_dir: Directory that receives the log files.
        debug: If True, sets the logging level to DEBUG, otherwise INFO.

    Returns:
        The path of the log file.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"upload_manager_{timestamp}.log"

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.info("--- Upload Manager started (logging to file) ---")
    return log_file_path
