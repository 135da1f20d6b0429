from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional


@dataclass
class Diagnostic:
    code: str
    message: str
    severity: str = "ERROR"
    location: Optional[str] = None
    hints: List[str] = field(default_factory=list)
    data: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "location": self.location,
            "hints": self.hints,
            "data": self.data,
        }


class SimLadderError(Exception):
    code = "E-SIMLADDER"

    def __init__(
        self,
        message: str,
        *,
        location: Optional[str] = None,
        data: Optional[dict] = None,
        diagnostic: Optional[Diagnostic] = None,
    ) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic or Diagnostic(
            code=self.code, message=message, location=location, data=data
        )


class InvalidInputError(SimLadderError):
    code = "E-INPUT"


class CacheUnavailableError(SimLadderError):
    code = "E-CACHE-UNAVAILABLE"


class AdapterError(SimLadderError):
    code = "E-ADAPTER"

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retryable = retryable


class SolverTimeoutError(SimLadderError):
    code = "E-TIMEOUT"


class JobCancelledError(SimLadderError):
    code = "E-CANCELLED"


class JobFailedError(SimLadderError):
    code = "E-JOB-FAILED"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.attempts = attempts
        self.cause = cause


class PluginError(SimLadderError):
    code = "E-PLUGIN"


class ConfigError(SimLadderError):
    code = "E-CONFIG"

    def __init__(self, diagnostics: "Diagnostics") -> None:
        first = next((d for d in diagnostics.items if d.severity == "ERROR"), None)
        message = first.message if first else "Invalid configuration"
        super().__init__(message, diagnostic=first)
        self.diagnostics = diagnostics


class Diagnostics:
    def __init__(self) -> None:
        self.items: List[Diagnostic] = []

    def add(self, diagnostic: Diagnostic) -> None:
        self.items.append(diagnostic)

    def extend(self, diagnostics: Iterable[Diagnostic] | "Diagnostics") -> None:
        if isinstance(diagnostics, Diagnostics):
            self.items.extend(diagnostics.items)
        else:
            self.items.extend(diagnostics)

    def has_errors(self) -> bool:
        return any(d.severity == "ERROR" for d in self.items)

    def raise_for_errors(self) -> None:
        if self.has_errors():
            raise ConfigError(self)

    def to_list(self) -> List[dict]:
        return [d.to_dict() for d in self.items]
