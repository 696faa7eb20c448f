"""
Text-completion oracle used for best-effort SQL translation and repair.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .config import OracleConfig

logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("429", "too many requests", "resource exhausted", "resourceexhausted")
_CODE_FENCE = re.compile(r"```[a-zA-Z]*")


class OracleError(Exception):
    pass


class OracleRateLimitError(OracleError):
    pass


def is_rate_limit_message(message):
    # type: (str) -> bool
    lowered = message.lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


def strip_code_fences(text):
    # type: (str) -> str
    return _CODE_FENCE.sub("", text or "").strip()


class GeminiOracle:
    """Google Gemini backed oracle exposing a single ``complete(prompt)`` call."""

    def __init__(self, config):
        # type: (OracleConfig) -> None
        if not config.api_key:
            raise OracleError("Missing GEMINI_API_KEY for the rewrite oracle")
        import google.generativeai as genai

        genai.configure(api_key=config.api_key)
        self.model_name = config.model
        self.timeout = config.timeout
        self._model = genai.GenerativeModel(config.model)

    def complete(self, prompt):
        # type: (str) -> str
        try:
            response = self._model.generate_content(
                prompt, request_options={"timeout": self.timeout}
            )
            text = response.text
        except Exception as e:
            message = "{}: {}".format(type(e).__name__, e)
            if is_rate_limit_message(message):
                raise OracleRateLimitError(message)
            raise OracleError(message)
        logger.debug("Oracle (%s) returned %d characters", self.model_name, len(text or ""))
        return text or ""


def build_oracle(config):
    # type: (OracleConfig) -> Optional[GeminiOracle]
    """Return an oracle, or None when no API key is configured."""
    if not config.api_key:
        logger.warning("No oracle API key configured; only deterministic SQL rules will run")
        return None
    return GeminiOracle(config)
