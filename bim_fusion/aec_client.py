"""
aec_client.py — AEC Data Model (GraphQL) client.

Reads declared property definitions for a cloud-hosted design version:

    designVersion(id) {
        propertyDefinitions            { results { name } }
        elementGroups { results {
            propertyDefinitions        { results { name } } } }
    }

When that yields nothing the id is retried as an element group.  Token
acquisition is outside this module: the bearer token is taken from the
``APS_ACCESS_TOKEN`` environment variable or passed in explicitly.
"""

from __future__ import annotations

import logging
import os

import requests

from bim_fusion.config import (
    AEC_GRAPHQL_URL,
    AEC_PAGE_LIMIT,
    AEC_TIMEOUT_SEC,
    AEC_VERSION_PREFIXES,
    APS_TOKEN_ENV,
)

log = logging.getLogger(__name__)

DESIGN_VERSION_QUERY = """
query GetAECProperties($id: ID!) {
    designVersion(id: $id) {
        propertyDefinitions(pagination: {limit: %(limit)d}) {
            results { name }
        }
        elementGroups {
            results {
                propertyDefinitions(pagination: {limit: %(limit)d}) {
                    results { name }
                }
            }
        }
    }
}
""" % {"limit": AEC_PAGE_LIMIT}

ELEMENT_GROUP_QUERY = """
query GetEGProps($id: ID!) {
    elementGroup(id: $id) {
        propertyDefinitions { results { name } }
    }
}
"""


class AecQueryError(RuntimeError):
    """The GraphQL endpoint could not be queried or returned an error."""


def is_cloud_version(version_id: str | None) -> bool:
    return bool(version_id) and version_id.startswith(AEC_VERSION_PREFIXES)


def _names(block) -> list[str]:
    results = (block or {}).get("results") or []
    return [r["name"] for r in results if isinstance(r, dict) and r.get("name")]


class AecDataModelClient:
    """Thin GraphQL client; one POST per query."""

    def __init__(
        self,
        token: str | None = None,
        url: str = AEC_GRAPHQL_URL,
        timeout: float = AEC_TIMEOUT_SEC,
        session: requests.Session | None = None,
    ) -> None:
        self.token = token
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _token(self) -> str:
        token = self.token or os.environ.get(APS_TOKEN_ENV)
        if not token:
            raise AecQueryError("Not authenticated")
        return token

    def query(self, query: str, variables: dict | None = None) -> dict:
        """POST one GraphQL query and return its ``data`` block."""
        headers = {
            "Authorization": f"Bearer {self._token()}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.post(
                self.url,
                json={"query": query, "variables": variables or {}},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise AecQueryError(f"AEC Data Model request failed: {exc}") from exc
        except ValueError as exc:
            raise AecQueryError(f"Could not parse AEC Data Model response: {exc}") from exc

        if not isinstance(payload, dict):
            raise AecQueryError("AEC Data Model response is not an object")
        if payload.get("errors"):
            raise AecQueryError(f"AEC Data Model error: {payload['errors']}")
        return payload.get("data") or {}

    def property_names(self, version_id: str) -> list[str]:
        """Sorted, deduplicated property names declared for *version_id*."""
        names: set[str] = set()
        data = self.query(DESIGN_VERSION_QUERY, {"id": version_id})
        dv = data.get("designVersion") or {}
        names.update(_names(dv.get("propertyDefinitions")))
        for group in (dv.get("elementGroups") or {}).get("results") or []:
            names.update(_names((group or {}).get("propertyDefinitions")))

        if not names:
            log.debug("designVersion empty — retrying as elementGroup")
            data = self.query(ELEMENT_GROUP_QUERY, {"id": version_id})
            eg = data.get("elementGroup") or {}
            names.update(_names(eg.get("propertyDefinitions")))

        return sorted(names)
