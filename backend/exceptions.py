# exceptions.py — Domain error kinds surfaced to the transport boundary
#
# Every failure the core detects is raised as a DomainError carrying an
# explicit ErrorKind. main.py maps each kind to a stable HTTP status and the
# uniform {timestamp, status, error, message} body; the WebSocket router maps
# them to error frames.

from enum import Enum
from http import HTTPStatus
from typing import Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    BAD_REQUEST = "bad_request"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    UNAVAILABLE = "unavailable"


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKind.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorKind.BAD_REQUEST: HTTPStatus.BAD_REQUEST,
    ErrorKind.CONFLICT: HTTPStatus.CONFLICT,
    ErrorKind.UNAUTHORIZED: HTTPStatus.UNAUTHORIZED,
    ErrorKind.UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
}


class DomainError(Exception):
    kind: ErrorKind = ErrorKind.BAD_REQUEST
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind].value

    @property
    def error(self) -> str:
        return STATUS_BY_KIND[self.kind].name


class NotFoundError(DomainError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class ForbiddenError(DomainError):
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class BadRequestError(DomainError):
    kind = ErrorKind.BAD_REQUEST
    default_message = "Bad request"


class ConflictError(DomainError):
    kind = ErrorKind.CONFLICT
    default_message = "Resource already exists"


class UnauthorizedError(DomainError):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Not authenticated"


class DeliveryOverflowError(DomainError):
    """A live subscriber buffer was full when an event was pushed.

    Raised after the triggering rows are committed; the rows stay.
    """
    kind = ErrorKind.UNAVAILABLE
    default_message = "Delivery buffer full"

    def __init__(self, address: str, subscriber_ids: list):
        self.address = address
        self.subscriber_ids = list(subscriber_ids)
        super().__init__(
            f"Delivery buffer full for {len(self.subscriber_ids)} subscriber(s) on {address}"
        )
