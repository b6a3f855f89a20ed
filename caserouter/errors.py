"""
Typed failures returned by the routing engine.

Every operation either returns the updated query projection or raises one of
these. The API layer maps ``kind`` to a status code and a user-facing message.
"""
from typing import Optional


class RoutingError(Exception):
    """Base class for all routing failures."""

    kind = "RoutingError"
    http_status = 409

    def __init__(self, message: str, case_id: Optional[str] = None) -> None:
        self.message = message
        self.case_id = case_id
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"ok": False, "error": self.kind, "message": self.message}
        if self.case_id:
            body["case_id"] = self.case_id
        return body


class NotFound(RoutingError):
    """Query or agent id does not resolve within the caller's tenant."""

    kind = "NotFound"
    http_status = 404


class InvalidTransition(RoutingError):
    """The operation is not a legal edge from the query's current status."""

    kind = "InvalidTransition"

    def __init__(self, message: str, case_id: Optional[str] = None, status: Optional[str] = None) -> None:
        self.status = status
        super().__init__(message, case_id)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.status:
            body["status"] = self.status
        return body


class AlreadyAssigned(RoutingError):
    """Lost the race to accept; the caller should refresh and pick another query."""

    kind = "AlreadyAssigned"

    def __init__(self, message: str, case_id: Optional[str] = None, handler: Optional[str] = None) -> None:
        self.handler = handler
        super().__init__(message, case_id)


class NotIntendedRecipient(RoutingError):
    """Actor is not the addressed party of the pending transfer."""

    kind = "NotIntendedRecipient"
    http_status = 403


class TransferAlreadyPending(RoutingError):
    """A second transfer was requested while one is unresolved."""

    kind = "TransferAlreadyPending"


class RecipientUnavailable(RoutingError):
    """Transfer target is Busy, on Break or Offline."""

    kind = "RecipientUnavailable"
    http_status = 422

    def __init__(self, message: str, case_id: Optional[str] = None, work_status: Optional[str] = None) -> None:
        self.work_status = work_status
        super().__init__(message, case_id)


class Forbidden(RoutingError):
    """Actor may not perform this operation (not the handler, not the customer, or policy denies it)."""

    kind = "Forbidden"
    http_status = 403
