from .base import ProgressCallback, Transport
from .local import LocalDirectoryTransport

__all__ = ["LocalDirectoryTransport", "ProgressCallback", "Transport"]
