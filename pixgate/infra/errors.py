# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/errors.py
from typing import Optional


class PixgateError(Exception):
    """Base error"""
    def __init__(self, message: str, code: int = 500, retry_after: Optional[int] = None):
        self.message = message
        self.code = code
        self.retry_after = retry_after
        super().__init__(message)


class LimitExceeded(PixgateError):
    """Operation quota exceeded"""
    def __init__(self, message: str, limit_type: str, remaining: Optional[int] = 0, retry_after: Optional[int] = None):
        super().__init__(message, 429, retry_after)
        self.limit_type = limit_type
        self.remaining = remaining


class AuthorizationDenied(PixgateError):
    """Scope is not available for the caller"""
    def __init__(self, message: str, scope: str):
        super().__init__(message, 403)
        self.scope = scope


class UnknownPlanError(PixgateError):
    def __init__(self, plan_id: str):
        super().__init__(f"Unknown plan: {plan_id}", 400)
        self.plan_id = plan_id


class StorageUnavailable(PixgateError):
    """Counter, cache or job storage could not be reached"""
    def __init__(self, message: str = "Storage unavailable"):
        super().__init__(message, 503)


class ComputeFailed(PixgateError):
    """A cached computation failed or could not be confirmed"""
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, 502)
        self.cause = cause


class InFlightAbandoned(ComputeFailed):
    """The in-flight marker vanished without a result being written"""


class JoinTimeout(ComputeFailed):
    """Waiting on another worker's computation timed out"""


class JobFailed(PixgateError):
    def __init__(self, reason: str):
        super().__init__(reason, 500)
        self.reason = reason
