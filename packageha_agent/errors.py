from __future__ import annotations

"""Error taxonomy shared by the session engine and its collaborators."""

from typing import Optional


class PackagehaError(Exception):
    """Base class for every error the engine knows how to convert."""


class UpstreamCatalogOrOrderError(PackagehaError):
    """Non-success response (or transport failure) from the commerce backend."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecisionOracleError(PackagehaError):
    """Network, auth, or configuration failure inside an AI backend."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class ValidationFailure(PackagehaError):
    """A consultation validator rejected the user's answer."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.message = message


class InvalidStateError(PackagehaError):
    """Memory step is inconsistent with the data it holds."""

    def __init__(self, rule: str, detected_step: str, corrective_step: str) -> None:
        super().__init__(f"{rule}: {detected_step} -> {corrective_step}")
        self.rule = rule
        self.detected_step = detected_step
        self.corrective_step = corrective_step
