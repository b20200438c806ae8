from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write was refused by the store's integrity rules.

    Raised for a duplicate user email and for a task whose owner does not
    exist. Both backends raise it so callers never see driver exceptions.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def field(self) -> Optional[str]:
        """Name of the offending field, when the store reported one."""
        return self.detail.get("field")
