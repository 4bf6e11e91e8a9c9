#!/usr/bin/env python3
"""
Convoy data model: watched event snapshots and resource keys.

A resource key is the "<namespace>/<name>" string that identifies a watched
object. It is the deduplication identity used by the work queue.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from convoy.errors import MalformedKeyError


def _field(obj: Any, attr: str, camel: Optional[str] = None) -> Any:
    """Read a field from a kubernetes model object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        if attr in obj:
            return obj[attr]
        return obj.get(camel) if camel else None
    return getattr(obj, attr, None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime for a Kubernetes timestamp."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def meta_namespace_key(obj: Any) -> str:
    """
    Build the resource key for an object.

    Namespaced objects map to "<namespace>/<name>", cluster-scoped objects to
    "<name>". Accepts WatchedEvent instances, kubernetes client models and
    dicts shaped like the API JSON.
    """
    if isinstance(obj, WatchedEvent):
        return obj.key

    metadata = _field(obj, "metadata")
    name = _field(metadata, "name")
    if not name:
        raise MalformedKeyError(f"object without metadata.name: {obj!r}")
    namespace = _field(metadata, "namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: Any) -> Tuple[str, str]:
    """
    Split a resource key into (namespace, name).

    Raises:
        MalformedKeyError: unless the key is exactly two non-empty parts
            joined by a single '/'.
    """
    if not isinstance(key, str):
        raise MalformedKeyError(key)
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise MalformedKeyError(key)
    return parts[0], parts[1]


class InvolvedObject:
    """Reference to the object an event is about."""

    __slots__ = ("kind", "namespace", "name")

    def __init__(self, kind: str = "", namespace: str = "", name: str = ""):
        self.kind = kind
        self.namespace = namespace
        self.name = name

    def __repr__(self):
        return f"InvolvedObject(kind={self.kind!r}, namespace={self.namespace!r}, name={self.name!r})"

    def __eq__(self, other):
        if not isinstance(other, InvolvedObject):
            return NotImplemented
        return (self.kind, self.namespace, self.name) == (other.kind, other.namespace, other.name)


class WatchedEvent:
    """
    Read-only snapshot of an observed Kubernetes Event.

    Owned by the informer cache. Workers read it and never mutate it.
    """

    __slots__ = (
        "namespace",
        "name",
        "created",
        "event_type",
        "reason",
        "message",
        "involved_object",
        "count",
        "source",
        "resource_version",
    )

    def __init__(
        self,
        namespace: str,
        name: str,
        created: Optional[datetime] = None,
        event_type: str = "Normal",
        reason: str = "",
        message: str = "",
        involved_object: Optional[InvolvedObject] = None,
        count: int = 1,
        source: str = "",
        resource_version: Optional[str] = None,
    ):
        object.__setattr__(self, "namespace", namespace)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "created", parse_timestamp(created))
        object.__setattr__(self, "event_type", event_type or "Normal")
        object.__setattr__(self, "reason", reason or "")
        object.__setattr__(self, "message", message or "")
        object.__setattr__(self, "involved_object", involved_object or InvolvedObject())
        object.__setattr__(self, "count", count if count is not None else 1)
        object.__setattr__(self, "source", source or "")
        object.__setattr__(self, "resource_version", resource_version)

    def __setattr__(self, name, value):
        raise AttributeError(f"WatchedEvent is read-only (tried to set {name!r})")

    def __repr__(self):
        return (
            f"WatchedEvent(key={self.key!r}, type={self.event_type!r}, "
            f"reason={self.reason!r}, created={self.created!r})"
        )

    def __eq__(self, other):
        if not isinstance(other, WatchedEvent):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    __hash__ = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_k8s(cls, obj: Any) -> "WatchedEvent":
        """Build a snapshot from a kubernetes.client.V1Event or an API dict."""
        metadata = _field(obj, "metadata")
        involved = _field(obj, "involved_object", "involvedObject")
        source = _field(obj, "source")
        return cls(
            namespace=_field(metadata, "namespace") or "",
            name=_field(metadata, "name") or "",
            created=_field(metadata, "creation_timestamp", "creationTimestamp"),
            event_type=_field(obj, "type"),
            reason=_field(obj, "reason"),
            message=_field(obj, "message"),
            involved_object=InvolvedObject(
                kind=_field(involved, "kind") or "",
                namespace=_field(involved, "namespace") or "",
                name=_field(involved, "name") or "",
            ),
            count=_field(obj, "count"),
            source=_field(source, "component") or "",
            resource_version=_field(metadata, "resource_version", "resourceVersion"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "created": self.created.isoformat() if self.created else None,
            "type": self.event_type,
            "reason": self.reason,
            "message": self.message,
            "involved_object": {
                "kind": self.involved_object.kind,
                "namespace": self.involved_object.namespace,
                "name": self.involved_object.name,
            },
            "count": self.count,
            "source": self.source,
            "resource_version": self.resource_version,
        }
