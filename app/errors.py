from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class DuplicateViolation(ApiError):
    """Unique constraint hit on insert; services may turn it into a domain outcome."""

    def __init__(self, *, constraint: str, message: str | None = None) -> None:
        super().__init__(
            code="DUPLICATE_VIOLATION",
            message=message or f"{constraint} already exists",
            error_class="conflict",
            retryable=False,
            http_status=409,
        )
        self.constraint = constraint


def tenant_unresolved(message: str = "tenant context is required") -> ApiError:
    return ApiError(
        code="TENANT_UNRESOLVED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def tenant_ambiguous(message: str = "tracking tokens must belong to the same tenant") -> ApiError:
    return ApiError(
        code="TENANT_AMBIGUOUS",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def not_found(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def state_conflict(code: str, message: str) -> ApiError:
    return ApiError(
        code=code,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def validation_error(message: str) -> ApiError:
    return ApiError(
        code="REQ_VALIDATION_FAILED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


class TenantContextMissing(RuntimeError):
    """Tenant-scoped table touched before the session tenant was set."""


class RowSecurityViolation(RuntimeError):
    """Row written for a tenant other than the one bound to the session."""
