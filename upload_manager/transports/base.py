from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..models import DestinationDirective, UploadJob

ProgressCallback = Callable[[int, int], None]

MAX_RENAME_CANDIDATES = 1000


def find_available_name(file_name: str, exists: Callable[[str], bool]) -> str:
    """Picks the first free name of the form 'report (1).pdf', 'report (2).pdf', ...

    Raises:
        FileExistsError: If no free name is found among the candidates.
    """
    if not exists(file_name):
        return file_name
    stem, dot, extension = file_name.rpartition('.')
    if not stem:
        # No extension, or a dotfile such as '.env'
        stem, dot, extension = file_name, '', ''
    for index in range(1, MAX_RENAME_CANDIDATES + 1):
        candidate = f"{stem} ({index}){dot}{extension}"
        if not exists(candidate):
            return candidate
    raise FileExistsError(f"No free name available for '{file_name}'")


class Transport(ABC):
    """Abstract Base Class for upload transports.

    A transport moves the bytes of one job to the content store. The engine
    calls `transfer()` from a worker thread, one call per attempt.
    """

    @abstractmethod
    def transfer(self, job: UploadJob, directive: DestinationDirective, on_progress: ProgressCallback) -> Optional[str]:
        """Uploads the job's file, blocking until it finishes.

        Implementations report `on_progress(loaded, total)` in delivery order,
        raise on failure (`TransferFailure` or a builtin OS/network error), and
        apply their own timeouts. With `RENAME` the store picks a free name.

        Returns:
            The name the content store saved the file under, if known.
        """
        pass

    @abstractmethod
    def abort(self, job: UploadJob) -> None:
        """Best-effort request to stop an in-flight transfer. Must not block."""
        pass

    def close(self) -> None:
        """Releases any connections held by the transport."""
        pass
