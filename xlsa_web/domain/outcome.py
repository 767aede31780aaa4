from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar, Union

V = TypeVar("V")
W = TypeVar("W")


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    NOT_FOUND = "NotFound"
    UNKNOWN_STRATEGY = "UnknownStrategy"
    INVALID_STRATEGY = "InvalidStrategy"
    INVALID_TIER = "InvalidTier"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    FILE_PROCESSING = "FileProcessingError"
    PROVIDER = "ProviderError"
    EXECUTION = "ExecutionError"


@dataclass(frozen=True)
class AppError:
    """
    Error payload carried by every Err.
    Callers branch on `kind`; `message` is for humans only.
    """
    kind: ErrorKind
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        out = {"error": self.kind.value, "message": self.message}
        if self.details:
            out["details"] = dict(self.details)
        return out

    @staticmethod
    def invalid_input(message: str, **details: Any) -> "AppError":
        return AppError(ErrorKind.INVALID_INPUT, message, details)

    @staticmethod
    def not_found(resource: str, resource_id: Any = None) -> "AppError":
        message = f"{resource} with id {resource_id} not found" if resource_id is not None else f"{resource} not found"
        return AppError(ErrorKind.NOT_FOUND, message, {"resource": resource, "id": resource_id})

    @staticmethod
    def unknown_strategy(key: str) -> "AppError":
        return AppError(ErrorKind.UNKNOWN_STRATEGY, f"Unknown strategy: {key}", {"key": key})

    @staticmethod
    def invalid_strategy(key: str, reason: str) -> "AppError":
        return AppError(ErrorKind.INVALID_STRATEGY, f"Invalid strategy {key}: {reason}", {"key": key})

    @staticmethod
    def invalid_tier(tier: Any) -> "AppError":
        return AppError(ErrorKind.INVALID_TIER, f"Invalid tier: {tier}", {"tier": tier})

    @staticmethod
    def insufficient_credits(required: int, available: int) -> "AppError":
        return AppError(
            ErrorKind.INSUFFICIENT_CREDITS,
            f"Insufficient credits. Required: {required}, Available: {available}",
            {"required": required, "available": available},
        )

    @staticmethod
    def file_processing(file_name: str, message: str = "File processing failed") -> "AppError":
        return AppError(ErrorKind.FILE_PROCESSING, f"{message}: {file_name}", {"file_name": file_name})

    @staticmethod
    def provider(provider: str, message: str, **details: Any) -> "AppError":
        return AppError(
            ErrorKind.PROVIDER,
            f"AI Provider Error ({provider}): {message}",
            {"provider": provider, **details},
        )

    @staticmethod
    def execution(message: str = "Unexpected failure while executing the request", **details: Any) -> "AppError":
        return AppError(ErrorKind.EXECUTION, message, details)

    @staticmethod
    def cancelled() -> "AppError":
        return AppError(ErrorKind.EXECUTION, "Operation cancelled", {"cancelled": True})


@dataclass(frozen=True)
class Ok(Generic[V]):
    value: V

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> V:
        return self.value

    def unwrap_or(self, default: Any) -> V:
        return self.value

    def map(self, fn: Callable[[V], W]) -> "Outcome[W]":
        return Ok(fn(self.value))

    def and_then(self, fn: Callable[[V], "Outcome[W]"]) -> "Outcome[W]":
        return fn(self.value)


@dataclass(frozen=True)
class Err:
    error: AppError

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    def unwrap(self):
        raise ValueError(f"Cannot unwrap failed outcome: {self.error.kind.value}: {self.error.message}")

    def unwrap_or(self, default: Any) -> Any:
        return default

    def map(self, fn: Callable[[Any], Any]) -> "Err":
        return self

    def and_then(self, fn: Callable[[Any], Any]) -> "Err":
        return self


Outcome = Union[Ok[V], Err]
