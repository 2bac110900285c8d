"""Classify raw OCR verification responses as valid or invalid business data.

The strict rule is the default. Callers that need the looser behaviour
(any non-empty payload counts) pass :func:`lenient_rule` to
:class:`OcrValidator` instead.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from ..logging import get_logger

LOG = get_logger("validation")

REQUIRED_FIELD = "emitente_cnpj"

Rule = Callable[[Any], bool]


@dataclass(frozen=True)
class OcrValidation:
    valid: bool
    data: Any


def strict_rule(payload: Any) -> bool:
    """No null top-level values and a truthy issuer CNPJ."""
    if not isinstance(payload, Mapping):
        return False
    if any(value is None for value in payload.values()):
        return False
    return bool(payload.get(REQUIRED_FIELD))


def lenient_rule(payload: Any) -> bool:
    """Non-empty text or non-empty object."""
    if isinstance(payload, str):
        return bool(payload.strip())
    if isinstance(payload, (Mapping, list)):
        return len(payload) > 0
    return payload is not None


class OcrValidator:
    def __init__(self, rule: Rule = strict_rule) -> None:
        self.rule = rule

    def __call__(self, text: str) -> OcrValidation:
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError, RecursionError):
            # Unparsable bodies are kept verbatim so they can still be displayed.
            LOG.debug("OCR payload is not JSON; keeping raw text")
            return OcrValidation(valid=False, data=text)
        valid = bool(self.rule(parsed))
        LOG.debug(f"OCR payload classified valid={valid}")
        return OcrValidation(valid=valid, data=parsed)


validate_ocr_text = OcrValidator()
