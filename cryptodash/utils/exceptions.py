from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    STORAGE = "storage"
    PRICE_FEED = "price_feed"
    SYSTEM = "system"


class DashboardError(Exception):
    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message
        self.category = category
        self.status_code = status_code
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.category.value}] {self.message}"]
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " | ".join(parts)


class NotFoundError(DashboardError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message, ErrorCategory.NOT_FOUND, 404)


class ConflictError(DashboardError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCategory.CONFLICT, 409)


class ValidationError(DashboardError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCategory.VALIDATION, 400)


class StoreError(DashboardError):
    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCategory.STORAGE, 500)


class PriceFeedError(DashboardError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, ErrorCategory.PRICE_FEED, status_code or 502)
