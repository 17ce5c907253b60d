"""Exception taxonomy shared by the runcoach services."""

from __future__ import annotations

from typing import Optional


class RunCoachError(Exception):
    """Base class for every error raised by runcoach services."""


class AnalysisError(RunCoachError):
    """The text-generation capability could not produce a usable answer."""


class ConfigurationError(AnalysisError):
    """The capability is unusable, e.g. no API key is configured."""


class NetworkOrServerError(AnalysisError):
    """The request failed in transit or the service answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status {self.status_code})"


class MalformedResponseError(AnalysisError):
    """The model answered, but not with the agreed JSON contract."""


class PersistenceError(RunCoachError):
    """A record store read or write failed."""
