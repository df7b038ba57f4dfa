from __future__ import annotations

from typing import Any


class SkillpmError(RuntimeError):
    """Base class for every error surfaced to the command line."""

    def __init__(self, message: str, *, remedy: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remedy = remedy

    def __str__(self) -> str:
        if self.remedy:
            return f"{self.message} → Solution: {self.remedy}"
        return self.message

    def metadata(self) -> dict[str, Any]:
        return {}


class ValidationError(SkillpmError):
    def __init__(self, message: str, *, field: str | None = None, value: Any = None, remedy: str | None = None) -> None:
        super().__init__(message, remedy=remedy)
        self.field = field
        self.value = value

    def metadata(self) -> dict[str, Any]:
        return {"field": self.field, "value": self.value}


class ConfigurationError(SkillpmError):
    def __init__(self, message: str, *, config_key: str | None = None, remedy: str | None = None) -> None:
        super().__init__(message, remedy=remedy)
        self.config_key = config_key

    def metadata(self) -> dict[str, Any]:
        return {"configKey": self.config_key}


class AuthorizationError(SkillpmError):
    def __init__(self, message: str, *, identity: str | None = None, remedy: str | None = None) -> None:
        super().__init__(message, remedy=remedy)
        self.identity = identity

    def metadata(self) -> dict[str, Any]:
        return {"identity": self.identity}


NETWORK_ERROR_TYPES = ("timeout", "gateway_error", "connection_failure", "not_found", "malformed_response")


class NetworkError(SkillpmError):
    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        error_type: str = "connection_failure",
        retryable: bool = False,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message, remedy=remedy)
        if error_type not in NETWORK_ERROR_TYPES:
            raise ValueError(f"Unknown network error type: {error_type!r}")
        self.url = url
        self.error_type = error_type
        self.retryable = retryable

    def metadata(self) -> dict[str, Any]:
        return {"url": self.url, "errorType": self.error_type, "retryable": self.retryable}


class FileSystemError(SkillpmError):
    def __init__(self, message: str, *, path: str | None = None, remedy: str | None = None) -> None:
        super().__init__(message, remedy=remedy)
        self.path = path

    def metadata(self) -> dict[str, Any]:
        return {"path": self.path}


class DependencyError(SkillpmError):
    def __init__(
        self,
        message: str,
        *,
        dependency_name: str | None = None,
        dependency_path: list[str] | None = None,
        remedy: str | None = None,
    ) -> None:
        super().__init__(message, remedy=remedy)
        self.dependency_name = dependency_name
        self.dependency_path = list(dependency_path or [])

    def metadata(self) -> dict[str, Any]:
        return {"dependencyName": self.dependency_name, "dependencyPath": self.dependency_path}


class SkillNotFoundError(DependencyError):
    def __init__(self, name: str, version: str | None = None, *, dependency_path: list[str] | None = None) -> None:
        label = f"{name}@{version}" if version else name
        super().__init__(
            f"Skill not found: {label}",
            dependency_name=name,
            dependency_path=dependency_path,
            remedy="Check the skill name and version, or run 'skillpm search' to find available skills.",
        )
        self.name = name
        self.version = version


class InternalError(SkillpmError):
    """Invariant violation inside skillpm itself. Never an expected outcome."""


class UserCancelledError(SkillpmError):
    def __init__(self, message: str = "Operation cancelled by user") -> None:
        super().__init__(message)


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, UserCancelledError):
        return 0
    if isinstance(exc, (ValidationError, ConfigurationError, DependencyError)):
        return 1
    if isinstance(exc, AuthorizationError):
        return 3
    return 2
