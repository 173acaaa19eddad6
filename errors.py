"""Typed failures raised by the attendance core.

Each one is a werkzeug HTTP exception so the Flask layer can turn it into a
status code without a lookup table.
"""
from werkzeug.exceptions import BadRequest, Conflict, Forbidden, NotFound, Unauthorized


class ValidationError(BadRequest):
    pass


class AuthError(Unauthorized):
    description = "Not authenticated"


class AccessDenied(Forbidden):
    description = "Forbidden"


class NotFoundError(NotFound):
    pass


class ConflictError(Conflict):
    pass
