"""
Error taxonomy shared by the store, the mutation layer, the HTTP routes
and the board client.

Every error carries the HTTP status it maps to and a short machine code,
so the server can render it and the client can map a response back.
"""
from typing import Any, Dict, List, Optional


class BoardError(Exception):
    """Base class for all task board errors."""
    status = 500
    code = "internal_error"

    def __init__(self, message: str = "", errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class InvalidInput(BoardError):
    """Request body or query failed schema validation."""
    status = 400
    code = "invalid_input"


class Unauthorized(BoardError):
    """No valid identity on the request."""
    status = 401
    code = "unauthorized"


class Forbidden(BoardError):
    """Identity is valid but lacks privilege or is pending approval."""
    status = 403
    code = "forbidden"


class NotFound(BoardError):
    status = 404
    code = "not_found"


class InternalError(BoardError):
    status = 500
    code = "internal_error"


class StoreError(InternalError):
    """Raised when the SQLite layer fails."""
    pass


ERRORS_BY_STATUS = {
    400: InvalidInput,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
}


def error_for_status(status: int, message: str = "", errors=None) -> BoardError:
    """Build the error matching an HTTP status (anything unknown is internal)."""
    cls = ERRORS_BY_STATUS.get(status, InternalError)
    return cls(message, errors=errors)
