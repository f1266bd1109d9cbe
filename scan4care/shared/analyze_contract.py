"""Analyze service contract helpers.

This module documents the data shapes shared between the orchestrator and its
collaborators (store, notifier, inference client) and the JSON envelope the
web client depends on. It is intentionally stdlib-only so it can be imported
anywhere without heavy deps.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, TypedDict, Union


ErrorKind = Literal[
    "validation_error",
    "storage_error",
    "configuration_error",
    "inference_error",
    "notification_error",
]

DEFAULT_LOCATION = "Unknown"
DEFAULT_DEVICE = "Unknown device"
DEFAULT_PROMPT = "Analyze this image"

PROBLEM_FIELD = "image"
SELFIE_FIELD = "selfie"


@dataclass(frozen=True)
class UploadedImage:
    """Handle to one stored upload. Owned by a single request."""

    field_name: str
    path: Path
    mime_type: str
    size_bytes: int


@dataclass(frozen=True)
class AnalysisRequest:
    problem_image: UploadedImage
    selfie_image: UploadedImage
    consent: bool
    location_hint: str = DEFAULT_LOCATION
    device_hint: str = DEFAULT_DEVICE
    user_prompt: str = DEFAULT_PROMPT


class AnalysisSuccess(TypedDict):
    ok: Literal[True]
    text: str


class AnalysisFailure(TypedDict):
    ok: Literal[False]
    kind: ErrorKind
    message: str


AnalysisResult = Union[AnalysisSuccess, AnalysisFailure]


def analysis_success(text: str) -> AnalysisSuccess:
    return {"ok": True, "text": text}


def analysis_failure(kind: ErrorKind, message: str) -> AnalysisFailure:
    return {"ok": False, "kind": kind, "message": message}


@dataclass(frozen=True)
class NotificationEvent:
    """One audit message. `image` is set for photo events only."""

    kind: Literal["text", "photo"]
    text: str
    image: Optional[UploadedImage] = None


class AnalyzeSuccessBody(TypedDict):
    success: Literal[True]
    response: str


class AnalyzeErrorBody(TypedDict):
    success: Literal[False]
    error: str


class AnalyzeError(Exception):
    """Base for failures that map onto a client-facing JSON error."""

    kind: ErrorKind = "validation_error"
    status_code: int = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class UploadValidationError(AnalyzeError):
    kind: ErrorKind = "validation_error"
    status_code = 422


class StorageError(AnalyzeError):
    kind: ErrorKind = "storage_error"
    status_code = 500


class ConfigurationError(AnalyzeError):
    kind: ErrorKind = "configuration_error"
    status_code = 500


class InferenceError(AnalyzeError):
    kind: ErrorKind = "inference_error"
    status_code = 500


def success_body(text: str) -> AnalyzeSuccessBody:
    return {"success": True, "response": text}


def error_body(message: str) -> AnalyzeErrorBody:
    return {"success": False, "error": message}
