"""
Metabase API client for cards and database metadata.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from .config import MetabaseConfig, RetryConfig
from .models import Card, SchemaCatalog

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = (502, 503, 504)


class MetabaseApiError(Exception):
    def __init__(self, status_code, message, response=None):
        # type: (int, str, Optional[dict]) -> None
        self.status_code = status_code
        self.message = message
        self.response = response
        super(MetabaseApiError, self).__init__(
            "Metabase API error {}: {}".format(status_code, message)
        )

    @property
    def is_transient(self) -> bool:
        return self.status_code in _TRANSIENT_STATUS


class MetabaseClient:
    def __init__(self, config, retry=None):
        # type: (MetabaseConfig, Optional[RetryConfig]) -> None
        self.config = config
        self.retry = retry or RetryConfig()
        self.base_url = "{}/api".format(config.url)
        self.session = requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        self._authenticate()

    def _authenticate(self):
        # type: () -> None
        if self.config.api_key:
            self.session.headers["x-api-key"] = self.config.api_key
            logger.info("Authenticated with Metabase using API key")
        elif self.config.username and self.config.password:
            resp = self.session.post(
                "{}/session".format(self.base_url),
                json={
                    "username": self.config.username,
                    "password": self.config.password,
                },
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
            token = resp.json().get("id")
            self.session.headers["X-Metabase-Session"] = token
            logger.info("Authenticated with Metabase using session token")
        else:
            raise ValueError(
                "Metabase authentication required: provide api_key or username/password"
            )

    def card_url(self, card_id):
        # type: (int) -> str
        return "{}/question/{}".format(self.config.url, card_id)

    def _request(self, method, endpoint, json=None, params=None):
        # type: (str, str, Optional[dict], Optional[dict]) -> Any
        url = "{}/{}".format(self.base_url, endpoint.lstrip("/"))
        try:
            resp = self.session.request(
                method, url, json=json, params=params, timeout=self.config.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            # 503 stands in for "no response"; callers treat it as transient
            raise MetabaseApiError(503, "{}: {}".format(type(e).__name__, e))
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                msg = body.get("message", resp.text)
            else:
                msg = resp.text
            raise MetabaseApiError(resp.status_code, msg, body if isinstance(body, dict) else None)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise MetabaseApiError(
                resp.status_code, "Invalid JSON in response from {}: {}".format(endpoint, e)
            )

    def _get(self, endpoint, params=None):
        # type: (str, Optional[dict]) -> Any
        return self._request("GET", endpoint, params=params)

    def _post(self, endpoint, json=None):
        # type: (str, Optional[dict]) -> Any
        return self._request("POST", endpoint, json=json)

    def _put(self, endpoint, json=None):
        # type: (str, Optional[dict]) -> Any
        return self._request("PUT", endpoint, json=json)

    def validate_connection(self):
        # type: () -> dict
        return self._get("user/current")

    # Cards API

    def list_cards(self):
        # type: () -> List[Card]
        return [Card.from_api(c) for c in self._get("card") or []]

    def get_card(self, card_id):
        # type: (int) -> Card
        return Card.from_api(self._get("card/{}".format(card_id)))

    def create_card(self, definition):
        # type: (Dict[str, Any]) -> dict
        result = self._post("card", json=definition)
        logger.info("Created card '%s' (id=%s)", definition.get("name"), result.get("id"))
        return result

    def update_card(self, card_id, definition):
        # type: (int, Dict[str, Any]) -> dict
        result = self._put("card/{}".format(card_id), json=definition)
        logger.info("Updated card id=%d", card_id)
        return result

    def query_card(self, card_id):
        # type: (int) -> dict
        """Run a card once and return ``{"error": <message>}`` on failure.

        Metabase reports query errors inside a 202 response body rather than
        as an HTTP error, so both shapes are folded into the same dict.
        Transient transport failures are retried with exponential backoff.
        """
        attempt = 0
        while True:
            try:
                result = self._post("card/{}/query".format(card_id)) or {}
                break
            except MetabaseApiError as e:
                if e.is_transient and attempt < self.retry.max_retries:
                    attempt += 1
                    delay = self.retry.base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Transient error running card %d (%s). Retrying in %.1fs (%d/%d)",
                        card_id, e, delay, attempt, self.retry.max_retries,
                    )
                    time.sleep(delay)
                    continue
                return {"error": e.message}

        error = result.get("error")
        if error:
            return {"error": error if isinstance(error, str) else str(error)}
        return {"row_count": result.get("row_count")}

    # Database metadata

    def get_database_metadata(self, database_id):
        # type: (int) -> dict
        return self._get(
            "database/{}/metadata".format(database_id),
            params={"include_hidden": "true"},
        )

    def get_schema(self, database_id):
        # type: (int) -> SchemaCatalog
        catalog = SchemaCatalog.from_metadata(
            database_id, self.get_database_metadata(database_id) or {}
        )
        logger.info(
            "Loaded %d tables for database id=%d", len(catalog.tables), database_id
        )
        return catalog
