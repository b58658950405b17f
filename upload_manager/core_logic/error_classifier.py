"""Sorts raw transport failures into the retry/recovery taxonomy.

Classification rules, in priority order:

1. Name conflicts (the store already holds a file with that name) become
   NAME_CONFLICT errors with an overwrite/rename/skip prompt.
2. Failures that may go away on their own (timeouts, dropped connections,
   5xx responses, momentary quota checks) become TRANSIENT errors that are
   retried automatically.
3. Everything else is PERMANENT and is never retried automatically.

A known HTTP-like status code takes precedence over the exception type, and
the exception type takes precedence over keywords in the failure message.
"""
import errno
import logging
import socket
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple, Union

from ..models import (
    NAME_CONFLICT_RECOVERY,
    NO_RECOVERY,
    RETRY_RECOVERY,
    ClassifiedError,
    ErrorKind,
    ErrorReason,
)
from ..utils import format_bytes

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE_BYTES = 100 * 1024 * 1024

REASON_KINDS: Dict[ErrorReason, ErrorKind] = {
    ErrorReason.DUPLICATE_FILE: ErrorKind.NAME_CONFLICT,
    ErrorReason.NETWORK_ERROR: ErrorKind.TRANSIENT,
    ErrorReason.TIMEOUT: ErrorKind.TRANSIENT,
    ErrorReason.SERVER_ERROR: ErrorKind.TRANSIENT,
    ErrorReason.QUOTA_EXCEEDED: ErrorKind.TRANSIENT,
    ErrorReason.FILE_TOO_LARGE: ErrorKind.PERMANENT,
    ErrorReason.UNSUPPORTED_TYPE: ErrorKind.PERMANENT,
    ErrorReason.PERMISSION_DENIED: ErrorKind.PERMANENT,
    ErrorReason.INVALID_REQUEST: ErrorKind.PERMANENT,
    ErrorReason.CANCELLED: ErrorKind.PERMANENT,
    ErrorReason.UNKNOWN: ErrorKind.PERMANENT,
}

# title, message, suggestion
ERROR_MESSAGES: Dict[ErrorReason, Tuple[str, str, str]] = {
    ErrorReason.NETWORK_ERROR: (
        "Network Error",
        "Connection to the server was lost.",
        "Check your network connection. The upload will be retried automatically.",
    ),
    ErrorReason.TIMEOUT: (
        "Upload Timeout",
        "The upload took too long to complete.",
        "Try uploading again or check your network connection.",
    ),
    ErrorReason.SERVER_ERROR: (
        "Server Error",
        "An error occurred on the server.",
        "The upload will be retried. If the problem persists, contact support.",
    ),
    ErrorReason.QUOTA_EXCEEDED: (
        "Storage Space Full",
        "The storage space is full. The upload could not be completed.",
        "Delete some files to free up space or contact your administrator.",
    ),
    ErrorReason.UNSUPPORTED_TYPE: (
        "Unsupported File Type",
        "This file type is not supported.",
        "Try uploading a different file type.",
    ),
    ErrorReason.PERMISSION_DENIED: (
        "Permission Denied",
        "You do not have permission to upload files to this location.",
        "Try uploading to a different folder or contact your administrator.",
    ),
    ErrorReason.INVALID_REQUEST: (
        "Invalid Request",
        "The server rejected the upload request.",
        "Check the file and destination, then try again.",
    ),
    ErrorReason.DUPLICATE_FILE: (
        "File Already Exists",
        "A file with this name already exists in the target folder.",
        "Choose to overwrite, rename, or skip this file.",
    ),
    ErrorReason.CANCELLED: (
        "Upload Cancelled",
        "The upload was cancelled.",
        "Upload the file again if this was not intended.",
    ),
    ErrorReason.UNKNOWN: (
        "Unknown Error",
        "An unexpected error occurred during upload.",
        "Try uploading again or contact support.",
    ),
}

STATUS_REASONS: Dict[int, ErrorReason] = {
    400: ErrorReason.INVALID_REQUEST,
    401: ErrorReason.PERMISSION_DENIED,
    403: ErrorReason.PERMISSION_DENIED,
    408: ErrorReason.TIMEOUT,
    409: ErrorReason.DUPLICATE_FILE,
    413: ErrorReason.FILE_TOO_LARGE,
    415: ErrorReason.UNSUPPORTED_TYPE,
    429: ErrorReason.SERVER_ERROR,
    501: ErrorReason.INVALID_REQUEST,
    505: ErrorReason.INVALID_REQUEST,
    507: ErrorReason.QUOTA_EXCEEDED,
}

# Checked in order against the lower-cased failure message.
MESSAGE_KEYWORDS: List[Tuple[ErrorReason, Tuple[str, ...]]] = [
    (ErrorReason.DUPLICATE_FILE, ("already exists", "duplicate")),
    (ErrorReason.TIMEOUT, ("timeout", "timed out")),
    (ErrorReason.NETWORK_ERROR, ("network", "connection reset", "connection refused",
                                 "connection aborted", "broken pipe", "failed to fetch",
                                 "temporarily unavailable")),
    (ErrorReason.QUOTA_EXCEEDED, ("quota", "storage space", "insufficient storage", "no space left")),
    (ErrorReason.FILE_TOO_LARGE, ("too large", "exceeds")),
    (ErrorReason.UNSUPPORTED_TYPE, ("not supported", "unsupported")),
    (ErrorReason.PERMISSION_DENIED, ("permission", "unauthorized", "forbidden", "access denied")),
    (ErrorReason.CANCELLED, ("cancelled", "canceled")),
    (ErrorReason.INVALID_REQUEST, ("malformed", "invalid", "bad request")),
]

RawFailure = Union[BaseException, str]


class ErrorClassifier:
    """Maps raw transport failures to `ClassifiedError` values.

    Attributes:
        max_file_size_bytes: The hard size ceiling of the content store, quoted
            in the suggestion of file-too-large errors.
    """

    def __init__(self, max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES):
        self.max_file_size_bytes = max_file_size_bytes

    def classify(self, raw_failure: RawFailure) -> ClassifiedError:
        """Classifies a failure raised by (or reported from) a transport.

        Args:
            raw_failure: The exception the transport raised, or a plain message.

        Returns:
            The classified error, including its recovery recommendation.
        """
        status_code = getattr(raw_failure, "status_code", None)
        detail = self._describe(raw_failure)

        reason = self._reason_from_status(status_code)
        if reason is None:
            reason = self._reason_from_exception(raw_failure)
        if reason is None:
            reason = self._reason_from_message(detail)
        # A conflict reported in the message wins over an unrelated status code
        if reason is not ErrorReason.DUPLICATE_FILE and self._reason_from_message(detail) is ErrorReason.DUPLICATE_FILE:
            reason = ErrorReason.DUPLICATE_FILE
        if reason is None:
            reason = ErrorReason.UNKNOWN

        kind = REASON_KINDS[reason]
        title, message, suggestion = self._messages_for(reason)
        if kind is ErrorKind.NAME_CONFLICT:
            recovery = NAME_CONFLICT_RECOVERY
        elif kind is ErrorKind.TRANSIENT:
            recovery = RETRY_RECOVERY
        else:
            recovery = NO_RECOVERY

        classified = ClassifiedError(
            kind=kind,
            reason=reason,
            title=title,
            message=message,
            suggestion=suggestion,
            recovery_action=recovery,
            status_code=status_code,
            detail=detail,
        )
        logger.debug(f"Classified failure '{detail}' (status={status_code}) as {kind.value}/{reason.value}")
        return classified

    def _messages_for(self, reason: ErrorReason) -> Tuple[str, str, str]:
        if reason is ErrorReason.FILE_TOO_LARGE:
            limit = format_bytes(self.max_file_size_bytes)
            return (
                "File Too Large",
                f"The file exceeds the maximum allowed size of {limit}.",
                f"Reduce the file size below {limit} or split it into smaller parts.",
            )
        return ERROR_MESSAGES[reason]

    @staticmethod
    def _describe(raw_failure: RawFailure) -> str:
        if isinstance(raw_failure, str):
            return raw_failure
        text = str(raw_failure)
        return text if text else type(raw_failure).__name__

    @staticmethod
    def _reason_from_status(status_code: Optional[int]) -> Optional[ErrorReason]:
        if status_code is None:
            return None
        if status_code in STATUS_REASONS:
            return STATUS_REASONS[status_code]
        if 500 <= status_code < 600:
            return ErrorReason.SERVER_ERROR
        if 400 <= status_code < 500:
            return ErrorReason.INVALID_REQUEST
        return None

    @staticmethod
    def _reason_from_exception(raw_failure: RawFailure) -> Optional[ErrorReason]:
        if isinstance(raw_failure, FileExistsError):
            return ErrorReason.DUPLICATE_FILE
        if isinstance(raw_failure, (TimeoutError, socket.timeout)):
            return ErrorReason.TIMEOUT
        if isinstance(raw_failure, ConnectionError):
            return ErrorReason.NETWORK_ERROR
        if isinstance(raw_failure, PermissionError):
            return ErrorReason.PERMISSION_DENIED
        if isinstance(raw_failure, FileNotFoundError):
            return ErrorReason.INVALID_REQUEST
        if isinstance(raw_failure, OSError) and raw_failure.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            return ErrorReason.QUOTA_EXCEEDED
        return None

    @staticmethod
    def _reason_from_message(detail: str) -> Optional[ErrorReason]:
        text = detail.lower()
        for reason, keywords in MESSAGE_KEYWORDS:
            if any(keyword in text for keyword in keywords):
                return reason
        return None


def create_error_report(errors: Iterable[ClassifiedError]) -> str:
    """Builds a Markdown report that groups errors by reason.

    Args:
        errors: Classified errors collected from failed jobs.

    Returns:
        The report, or 'No errors to report.' when there is nothing to show.
    """
    grouped: "OrderedDict[ErrorReason, List[ClassifiedError]]" = OrderedDict()
    for error in errors:
        grouped.setdefault(error.reason, []).append(error)

    if not grouped:
        return "No errors to report."

    lines = ["## Upload Error Report", ""]
    for reason, reason_errors in grouped.items():
        first = reason_errors[0]
        lines.append(f"### {first.title}")
        lines.append(f"**Count:** {len(reason_errors)}")
        lines.append(f"**Message:** {first.message}")
        lines.append(f"**Suggestion:** {first.suggestion}")
        lines.append("")
    return "\n".join(lines)
