"""
Error taxonomy shared by the hierarchy core and its HTTP layer.

Each class carries a stable `code` and the HTTP status the API answers with,
so callers can tell bad input, missing records, lost races and backend
failures apart.
"""

from __future__ import annotations


class HierarchyError(Exception):
    code = "hierarchy_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(HierarchyError):
    code = "validation_error"
    status_code = 400


class NotFoundError(HierarchyError):
    code = "not_found"
    status_code = 404


class ConflictError(HierarchyError):
    code = "conflict"
    status_code = 409


class StorageError(HierarchyError):
    code = "storage_error"
    status_code = 503
