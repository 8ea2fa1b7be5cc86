"""
Per-run job state: the store every step writes entities and relationships to.

Entities and relationships are plain dicts keyed by ``_key``.  The store keeps
an index by ``_type`` for iteration, a small key/value area for data handed
from one step to the next, and can upload the finished graph to a sync server
via POST /api/v1/graph/sync.

When ``server_url`` is None (offline), ``flush()`` is a no-op and the graph
can still be written to a local JSON file.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Iterator

from collector.errors import JobStateError, MissingEndpointError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Relationship helpers
# ---------------------------------------------------------------------------

class RelationshipClass:
    """Semantic verbs used for relationship ``_class``."""

    HAS = "HAS"
    USES = "USES"
    CREATED = "CREATED"


def relationship_type(source_type: str, verb: str, target_type: str) -> str:
    """Build a relationship ``_type`` from its endpoint types and verb.

    Leading ``_``-separated segments the target type shares with the source
    type are dropped, so ``google_app_engine_application`` HAS
    ``google_app_engine_service`` becomes
    ``google_app_engine_application_has_service``.
    """
    source_parts = source_type.split("_")
    target_parts = target_type.split("_")

    shared = 0
    for a, b in zip(source_parts, target_parts):
        if a != b:
            break
        shared += 1

    suffix = target_parts[shared:] or target_parts
    return f"{source_type}_{verb.lower()}_{'_'.join(suffix)}"


def create_direct_relationship(
    rel_class: str,
    from_entity: dict,
    to_entity: dict,
    properties: dict | None = None,
) -> dict:
    """Return a relationship dict from *from_entity* to *to_entity*."""
    from_key = from_entity["_key"]
    to_key = to_entity["_key"]
    relationship = {
        "_key": f"{from_key}|{rel_class.lower()}|{to_key}",
        "_type": relationship_type(from_entity["_type"], rel_class, to_entity["_type"]),
        "_class": rel_class,
        "_fromEntityKey": from_key,
        "_toEntityKey": to_key,
        "displayName": rel_class,
    }
    if properties:
        relationship.update(properties)
    return relationship


# ---------------------------------------------------------------------------
# JobState
# ---------------------------------------------------------------------------

_REQUIRED_ENTITY_FIELDS = ("_key", "_type", "_class")


class JobState:
    """In-memory entity/relationship store for one collection run.

    Adding a key that already exists is a no-op: the first write wins and
    the call returns False.
    """

    def __init__(
        self,
        server_url: str | None = None,
        token: str | None = None,
    ) -> None:
        self._server_url = server_url.rstrip("/") if server_url else None
        self._token = token

        self._entities: dict[str, dict] = {}
        self._keys_by_type: dict[str, list[str]] = {}
        self._relationships: dict[str, dict] = {}
        self._data: dict[str, Any] = {}

        logger.debug("JobState initialised (server=%s)", self._server_url or "offline")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_entity(self, entity: dict) -> bool:
        """Store *entity*. Returns False if its key was already present."""
        for field in _REQUIRED_ENTITY_FIELDS:
            if not entity.get(field):
                raise JobStateError(f"Entity is missing required field {field!r}: {entity!r}")

        key = entity["_key"]
        if key in self._entities:
            logger.warning(
                "Duplicate entity key %s (%s); keeping the first one",
                key, entity["_type"],
            )
            return False

        self._entities[key] = entity
        self._keys_by_type.setdefault(entity["_type"], []).append(key)
        logger.debug("Added entity: %s (%s)", key, entity["_type"])
        return True

    def add_entities(self, entities: list[dict]) -> int:
        """Store several entities; returns how many were new."""
        return sum(1 for entity in entities if self.add_entity(entity))

    def add_relationship(self, relationship: dict) -> bool:
        """Store *relationship*. Both endpoints must already be in the job state."""
        for field in ("_key", "_type", "_class", "_fromEntityKey", "_toEntityKey"):
            if not relationship.get(field):
                raise JobStateError(
                    f"Relationship is missing required field {field!r}: {relationship!r}"
                )

        for endpoint in ("_fromEntityKey", "_toEntityKey"):
            if relationship[endpoint] not in self._entities:
                raise MissingEndpointError(
                    f"Relationship {relationship['_key']} references unknown entity "
                    f"{relationship[endpoint]}"
                )

        key = relationship["_key"]
        if key in self._relationships:
            logger.debug("Duplicate relationship key %s ignored", key)
            return False

        self._relationships[key] = relationship
        logger.debug("Added relationship: %s (%s)", key, relationship["_type"])
        return True

    def set_data(self, key: str, value: Any) -> None:
        self._data[key] = value

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def has_key(self, key: str) -> bool:
        return key in self._entities or key in self._relationships

    def find_entity(self, key: str | None) -> dict | None:
        """Return the entity stored under *key*, or None."""
        if not key:
            return None
        return self._entities.get(key)

    def iterate_entities(self, entity_type: str) -> Iterator[dict]:
        """Yield every entity of *entity_type* in insertion order.

        Iterates over a snapshot, so the caller may add entities while
        iterating.
        """
        for key in list(self._keys_by_type.get(entity_type, ())):
            yield self._entities[key]

    def iterate_relationships(self, relationship_type: str | None = None) -> Iterator[dict]:
        for relationship in list(self._relationships.values()):
            if relationship_type is None or relationship["_type"] == relationship_type:
                yield relationship

    @property
    def entity_count(self) -> int:
        return len(self._entities)

    @property
    def relationship_count(self) -> int:
        return len(self._relationships)

    def summary(self) -> dict:
        """Counts of everything collected so far, broken down by ``_type``."""
        return {
            "entity_count": self.entity_count,
            "relationship_count": self.relationship_count,
            "entities_by_type": {
                t: len(keys) for t, keys in sorted(self._keys_by_type.items())
            },
            "relationships_by_type": dict(
                sorted(Counter(r["_type"] for r in self._relationships.values()).items())
            ),
        }

    # ------------------------------------------------------------------
    # Export / upload
    # ------------------------------------------------------------------

    def to_dict(self, events: list[dict] | None = None) -> dict:
        payload = {
            "entities": list(self._entities.values()),
            "relationships": list(self._relationships.values()),
        }
        if events is not None:
            payload["events"] = events
        return payload

    def write_json(self, path: str | Path, events: list[dict] | None = None) -> Path:
        """Write the collected graph to *path* as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        # default=str covers datetimes and proto-plus scalars left in properties.
        path.write_text(json.dumps(self.to_dict(events), indent=2, default=str) + "\n")
        logger.info(
            "Wrote %d entities, %d relationships to %s",
            self.entity_count, self.relationship_count, path,
        )
        return path

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json"}
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def flush(self, project_id: str | None = None, events: list[dict] | None = None) -> bool:
        """POST the collected graph to /api/v1/graph/sync.

        Returns True if the server accepted the upload.  Upload failures are
        logged, not raised: the local graph is still complete.
        """
        if not self._server_url or not self._token:
            return False
        if not self._entities and not self._relationships:
            return False

        logger.info(
            "Uploading %d entities, %d relationships to server",
            self.entity_count, self.relationship_count,
        )

        import requests

        payload = {**self.to_dict(events), "provider": "gcp", "project_id": project_id}
        body = json.dumps(payload, default=str)

        try:
            resp = requests.post(
                f"{self._server_url}/api/v1/graph/sync",
                data=body,
                headers=self._headers(),
                timeout=60,
            )
        except requests.RequestException as exc:
            logger.warning("Sync failed: %s", exc)
            return False

        if resp.status_code != 200:
            logger.warning("Sync failed (HTTP %s): %s", resp.status_code, resp.text[:200])
            return False

        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning("Sync failed: invalid response body: %s", exc)
            return False
        if not isinstance(data, dict):
            logger.warning("Sync failed: unexpected response body %r", data)
            return False

        logger.info(
            "Synced %s entities, %s relationships",
            data.get("entities_upserted"),
            data.get("relationships_upserted"),
        )
        return True
