"""
Parsed Google Cloud resource names.

Resource names are hierarchical paths of alternating collection ids and
resource ids, e.g. ``apps/my-app/services/default/versions/v1``.  They are
parsed once, when the entity is created, and the components are stored on the
entity so that dependent steps never have to split strings themselves.
"""

from __future__ import annotations

from dataclasses import dataclass

from collector.errors import MalformedResourceNameError


# ---------------------------------------------------------------------------
# Known name layouts (collection ids, outermost first)
# ---------------------------------------------------------------------------

APP_ENGINE_APPLICATION = ("apps",)
APP_ENGINE_SERVICE = ("apps", "services")
APP_ENGINE_VERSION = ("apps", "services", "versions")
APP_ENGINE_INSTANCE = ("apps", "services", "versions", "instances")
CLOUD_FUNCTION = ("projects", "locations", "functions")
SERVICE_ACCOUNT = ("projects", "serviceAccounts")
SERVICE_ACCOUNT_KEY = ("projects", "serviceAccounts", "keys")


@dataclass(frozen=True)
class ResourceName:
    """A resource name split into ``(collection, id)`` pairs."""

    name: str
    components: tuple[tuple[str, str], ...]

    def get(self, collection: str) -> str | None:
        """Return the id that follows *collection*, or None."""
        for coll, value in self.components:
            if coll == collection:
                return value
        return None

    def __getitem__(self, collection: str) -> str:
        value = self.get(collection)
        if value is None:
            raise KeyError(collection)
        return value

    @property
    def leaf_id(self) -> str:
        """The id of the resource itself (the last component)."""
        return self.components[-1][1]


def parse_resource_name(name: str | None, layout: tuple[str, ...]) -> ResourceName:
    """Parse *name* against *layout*.

    Raises ``MalformedResourceNameError`` if the segment count or any
    collection id does not match, or if a resource id is empty.
    """
    if not name:
        raise MalformedResourceNameError(f"Empty resource name for layout {layout}")

    segments = name.split("/")
    if len(segments) != 2 * len(layout):
        raise MalformedResourceNameError(
            f"{name!r} has {len(segments)} segments, expected {2 * len(layout)}"
        )

    components = []
    for i, expected in enumerate(layout):
        coll = segments[2 * i]
        value = segments[2 * i + 1]
        if coll != expected:
            raise MalformedResourceNameError(
                f"{name!r}: expected collection {expected!r} at position {2 * i}, got {coll!r}"
            )
        if not value:
            raise MalformedResourceNameError(f"{name!r}: empty id for {expected!r}")
        components.append((coll, value))

    return ResourceName(name=name, components=tuple(components))

