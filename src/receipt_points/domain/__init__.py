from .errors import (
    EntryNotFound,
    ImageRejected,
    InvalidTransition,
    NetworkError,
    PipelineError,
    PollCancelled,
    PollTimeout,
    ProtocolError,
    RetryNotPossible,
    UserCancelled,
)
from .models import UNSET, EntryStatus, MatchedRule, ProcessingEntry, Stage, coerce_points
from .validation import OcrValidation, OcrValidator, lenient_rule, strict_rule, validate_ocr_text

__all__ = [
    "EntryNotFound",
    "ImageRejected",
    "InvalidTransition",
    "NetworkError",
    "PipelineError",
    "PollCancelled",
    "PollTimeout",
    "ProtocolError",
    "RetryNotPossible",
    "UserCancelled",
    "UNSET",
    "EntryStatus",
    "MatchedRule",
    "ProcessingEntry",
    "Stage",
    "coerce_points",
    "OcrValidation",
    "OcrValidator",
    "lenient_rule",
    "strict_rule",
    "validate_ocr_text",
]
