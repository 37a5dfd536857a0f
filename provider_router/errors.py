# Copyright 2025 ATP Project Contributors
# Licensed under the Apache License, Version 2.0

"""Structured error codes and exception hierarchy for the provider router."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypedDict


class ErrorCode(str, Enum):
    METRICS_STORE_UNAVAILABLE = "metrics_store_unavailable"
    STORE_ERROR = "store_error"
    INVALID_REQUEST = "invalid_request"
    CONFIGURATION_ERROR = "configuration_error"
    INTERNAL = "internal_error"


class ErrorPayload(TypedDict):
    error: str
    detail: str


def error_response(code: ErrorCode, detail: str = "") -> ErrorPayload:
    return {"error": code.value, "detail": detail}


@dataclass
class RouterError(Exception):
    code: ErrorCode
    detail: str = ""

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.code.value}: {self.detail}" if self.detail else self.code.value

    def to_payload(self) -> ErrorPayload:
        return error_response(self.code, self.detail)


class MetricsStoreUnavailableError(RouterError):
    """The metrics store could not be read; there is nothing to rank against."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.METRICS_STORE_UNAVAILABLE, detail)


class StoreError(RouterError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.STORE_ERROR, detail)


class InvalidRequestError(RouterError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.INVALID_REQUEST, detail)


class ConfigurationError(RouterError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.CONFIGURATION_ERROR, detail)


class InternalError(RouterError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(ErrorCode.INTERNAL, detail)
