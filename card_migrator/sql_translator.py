"""
Oracle-backed SQL translation and repair with a content-addressed cache.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from typing import Optional, Set

from .config import RetryConfig
from .oracle import OracleError, OracleRateLimitError, strip_code_fences
from .sql_rewriter import apply_deterministic_rules, find_residual_constructs

logger = logging.getLogger(__name__)

TRANSLATION_FAILURE = "ERROR:"
REPAIR_FAILURE = "CANNOT_FIX"

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

TRANSLATE_PROMPT = """Convert the following PostgreSQL query to ClickHouse SQL.

Rules:
- Keep every {{{{placeholder}}}} and [[optional clause]] exactly as written.
- Keep column aliases and result column order unchanged.
- Use only the target tables and columns listed below.
- Return only the SQL, without explanations or code fences.
- If the query cannot be converted, return a single line starting with "ERROR:" and the reason.

Target schema:
{context}

PostgreSQL query:
{sql}
"""

REPAIR_PROMPT = """A ClickHouse query converted from PostgreSQL fails to run.

Original PostgreSQL query:
{original}

Current ClickHouse query:
{current}

Error returned by the database:
{error}

Target schema:
{context}

Return only the corrected ClickHouse SQL, keeping every {{{{placeholder}}}} unchanged.
If the query cannot be fixed, return exactly CANNOT_FIX.
"""


class TranslationError(Exception):
    pass


def placeholders(sql):
    # type: (str) -> Set[str]
    return {m.strip() for m in _PLACEHOLDER.findall(sql or "")}


class SqlTranslator:
    """Deterministic rules first, then the oracle for whatever they leave behind.

    Oracle results are cached under the sha256 of ``text`` and ``context`` so
    a repeated translation of the same query never calls the oracle again.
    """

    def __init__(self, oracle, store, retry=None):
        # type: (Optional[object], object, Optional[RetryConfig]) -> None
        self.oracle = oracle
        self.store = store
        self.retry = retry or RetryConfig()

    @staticmethod
    def cache_key(text, context):
        # type: (str, str) -> str
        return hashlib.sha256("{}\x00{}".format(text, context).encode("utf-8")).hexdigest()

    def rewrite_text(self, original, context):
        # type: (str, str) -> str
        """Rewrite ``original`` to the target dialect. Raises ``TranslationError``."""
        sql = apply_deterministic_rules(original)
        residual = find_residual_constructs(sql)
        if not residual:
            logger.debug("Deterministic rules fully translated the query")
            return sql
        logger.info("Residual constructs need the oracle: %s", ", ".join(residual))
        return self.translate(sql, context)

    def translate(self, text, context):
        # type: (str, str) -> str
        key = self.cache_key(text, context)
        try:
            cached = self.store.get_cached_translation(key)
        except OSError as e:
            logger.warning("Translation cache read failed: %s", e)
            cached = None
        if cached is not None:
            logger.info("Translation cache hit (%s)", key[:12])
            return cached

        if self.oracle is None:
            raise TranslationError(
                "Query needs the oracle but none is configured: {}".format(
                    ", ".join(find_residual_constructs(text)) or "unknown constructs"
                )
            )

        try:
            response = self._complete(TRANSLATE_PROMPT.format(context=context, sql=text))
        except OracleError as e:
            raise TranslationError("Oracle translation failed: {}".format(e))

        result = strip_code_fences(response)
        if not result:
            raise TranslationError("Oracle returned an empty translation")
        if result.upper().startswith(TRANSLATION_FAILURE):
            raise TranslationError(result[len(TRANSLATION_FAILURE):].strip() or "Oracle refused")
        missing = placeholders(text) - placeholders(result)
        if missing:
            raise TranslationError(
                "Translation dropped placeholders: {}".format(", ".join(sorted(missing)))
            )

        try:
            self.store.put_cached_translation(key, result)
        except OSError as e:
            logger.warning("Translation cache write failed: %s", e)
        return result

    def repair(self, original, current, error_message, context):
        # type: (str, str, str, str) -> Optional[str]
        """Ask for a corrected query. Returns None when no usable fix is offered."""
        if self.oracle is None:
            return None
        prompt = REPAIR_PROMPT.format(
            original=original, current=current, error=error_message, context=context
        )
        try:
            response = self._complete(prompt)
        except OracleError as e:
            logger.warning("Oracle repair failed: %s", e)
            return None

        fixed = strip_code_fences(response)
        if not fixed or REPAIR_FAILURE in fixed:
            logger.info("Oracle could not fix the query")
            return None
        if fixed.strip() == current.strip():
            logger.info("Oracle returned the query unchanged")
            return None
        if placeholders(current) - placeholders(fixed):
            logger.warning("Oracle repair dropped placeholders, discarding it")
            return None
        return fixed

    def _complete(self, prompt):
        # type: (str) -> str
        delay = self.retry.base_delay
        attempt = 0
        while True:
            try:
                return self.oracle.complete(prompt)
            except OracleRateLimitError as e:
                if attempt >= self.retry.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Oracle rate limited (%s), retry %d/%d in %.1fs",
                    e, attempt, self.retry.max_retries, delay,
                )
                time.sleep(delay)
                delay *= 2
