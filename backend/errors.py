# errors.py — Error taxonomy shared by the REST and realtime surfaces
from typing import Any, List, Optional


class KanbanError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"status": self.status_code, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(KanbanError):
    status_code = 400
    default_message = "Validation error"


class InvalidIdError(ValidationError):
    default_message = "Invalid ID format"


class DuplicateKeyError(ValidationError):
    default_message = "Duplicate field value entered"


class AuthError(KanbanError):
    status_code = 401
    default_message = "Not authorized"


class ForbiddenError(KanbanError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(KanbanError):
    status_code = 404
    default_message = "Resource not found"


class RateLimitError(KanbanError):
    status_code = 429
    default_message = "Too many requests"


def pydantic_errors(raw_errors) -> List[dict]:
    """Flatten pydantic error dicts into JSON-safe {field, message} entries."""
    out = []
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", []) if part not in ("body", "query", "path")]
        out.append({
            "field": ".".join(loc),
            "message": str(err.get("msg", "")),
        })
    return out
