"""Failure taxonomy shared by the pipeline, the clients and the API."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every failure raised by the tracker."""


class NetworkError(PipelineError):
    """Transport failure, non-success HTTP status or unreadable response body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(PipelineError):
    """Well-formed response that lacks a required field."""


class PollTimeout(PipelineError):
    """A polling loop reached its deadline without a resolved probe."""


class PollCancelled(PipelineError):
    """A polling loop noticed it was superseded or cancelled."""


class UserCancelled(PipelineError):
    """Processing was cancelled on request."""


class InvalidTransition(PipelineError):
    """A status or points change that the entry lifecycle does not allow."""


class RetryNotPossible(PipelineError):
    """The entry lacks what a retry needs (e.g. no scan id was ever issued)."""


class ImageRejected(PipelineError):
    """The submitted bytes are not an image or cannot fit the size budget."""


class EntryNotFound(PipelineError, KeyError):
    def __str__(self) -> str:
        return f"Entry not found: {self.args[0] if self.args else '?'}"
