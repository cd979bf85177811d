"""A small object store with the semantics the reconcilers rely on.

Objects are plain dictionaries shaped like cluster resources: a ``kind``,
a ``metadata`` mapping (name, namespace, labels, annotations, finalizers,
owner references, resource version) and optional ``spec`` and ``status``.
"""

from __future__ import annotations

import copy
import itertools
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, TypeVar

T = TypeVar("T")

EVENT_TYPE_WARNING = "Warning"
EVENT_TYPE_NORMAL = "Normal"


class NotFoundError(LookupError):
    """The requested object does not exist."""


class ConflictError(Exception):
    """The object was changed concurrently or already exists."""


@dataclass(frozen=True)
class Result:
    """Outcome of one reconciliation pass."""

    requeue: bool = False
    requeue_after: float = 0.0


@dataclass
class Event:
    """An event to be recorded against an object."""

    object: Mapping[str, Any]
    event_type: str
    reason: str
    message: str


def _meta(obj: Mapping[str, Any]) -> dict[str, Any]:
    return obj.setdefault("metadata", {})  # type: ignore[union-attr]


def _key(obj: Mapping[str, Any]) -> tuple[str, str, str]:
    meta = obj.get("metadata") or {}
    name = meta.get("name")
    if not name:
        raise ValueError("object has no metadata.name")
    kind = obj.get("kind")
    if not kind:
        raise ValueError("object has no kind")
    return kind, meta.get("namespace", ""), name


class MemoryClient:
    """In-memory store offering get, list, create, update and delete."""

    def __init__(self, objects: Iterable[dict[str, Any]] = ()) -> None:
        self._store: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._versions = itertools.count(1)
        for obj in objects:
            self.create(obj)

    def _stored(self, kind: str, name: str, namespace: str) -> dict[str, Any]:
        try:
            return self._store[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f"{kind} {namespace}/{name} not found") from None

    def _bump(self, stored: dict[str, Any], target: dict[str, Any]) -> None:
        version = str(next(self._versions))
        _meta(stored)["resourceVersion"] = version
        _meta(target)["resourceVersion"] = version

    @staticmethod
    def _check_version(stored: Mapping[str, Any], obj: Mapping[str, Any]) -> None:
        wanted = (obj.get("metadata") or {}).get("resourceVersion")
        current = stored["metadata"].get("resourceVersion")
        if wanted and wanted != current:
            raise ConflictError(
                f"{obj.get('kind')} {stored['metadata'].get('name')} has been modified"
            )

    def get(self, kind: str, name: str, namespace: str = "") -> dict[str, Any]:
        """Return a copy of the named object."""
        return copy.deepcopy(self._stored(kind, name, namespace))

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
        has_labels: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        """Return copies of matching objects ordered by namespace and name."""
        required = list(has_labels)
        found = []
        for (obj_kind, obj_ns, _), obj in sorted(self._store.items()):
            if obj_kind != kind:
                continue
            if namespace is not None and obj_ns != namespace:
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if labels and any(obj_labels.get(k) != v for k, v in labels.items()):
                continue
            if any(k not in obj_labels for k in required):
                continue
            found.append(copy.deepcopy(obj))
        return found

    def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Store a new object; its status is kept as given."""
        key = _key(obj)
        if key in self._store:
            raise ConflictError(f"{key[0]} {key[1]}/{key[2]} already exists")
        meta = _meta(obj)
        meta.setdefault("uid", str(uuid.uuid4()))
        meta.pop("deletionTimestamp", None)
        stored = copy.deepcopy(obj)
        self._bump(stored, obj)
        self._store[key] = stored
        return copy.deepcopy(stored)

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an object, keeping its stored status."""
        key = _key(obj)
        stored = self._stored(key[0], key[2], key[1])
        self._check_version(stored, obj)
        new = copy.deepcopy(obj)
        new.pop("status", None)
        if "status" in stored:
            new["status"] = copy.deepcopy(stored["status"])
        new_meta = _meta(new)
        new_meta["uid"] = stored["metadata"].get("uid")
        deleted_at = stored["metadata"].get("deletionTimestamp")
        if deleted_at:
            new_meta["deletionTimestamp"] = deleted_at
            if not new_meta.get("finalizers"):
                del self._store[key]
                return new
        else:
            new_meta.pop("deletionTimestamp", None)
        self._bump(new, obj)
        self._store[key] = new
        return copy.deepcopy(new)

    def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an object."""
        key = _key(obj)
        stored = self._stored(key[0], key[2], key[1])
        self._check_version(stored, obj)
        stored["status"] = copy.deepcopy(obj.get("status") or {})
        self._bump(stored, obj)
        return copy.deepcopy(stored)

    def delete(self, kind: str, name: str, namespace: str = "") -> None:
        """Delete an object, or mark it for deletion while finalizers remain."""
        stored = self._stored(kind, name, namespace)
        meta = stored["metadata"]
        if meta.get("finalizers"):
            if not meta.get("deletionTimestamp"):
                meta["deletionTimestamp"] = datetime.now(timezone.utc).isoformat()
                meta["resourceVersion"] = str(next(self._versions))
            return
        del self._store[(kind, namespace, name)]


def retry_on_conflict(fn: Callable[[], T], attempts: int = 5) -> T:
    """Call ``fn`` until it stops raising ConflictError, at most ``attempts`` times."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    for attempt in range(attempts):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts - 1:
                raise
    raise AssertionError("unreachable")


def is_deleting(obj: Mapping[str, Any]) -> bool:
    """Tell whether the object has been marked for deletion."""
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


def contains_finalizer(obj: Mapping[str, Any], finalizer: str) -> bool:
    return finalizer in ((obj.get("metadata") or {}).get("finalizers") or [])


def add_finalizer(obj: dict[str, Any], finalizer: str) -> None:
    finalizers = _meta(obj).setdefault("finalizers", [])
    if finalizer not in finalizers:
        finalizers.append(finalizer)


def remove_finalizer(obj: dict[str, Any], finalizer: str) -> None:
    meta = _meta(obj)
    meta["finalizers"] = [f for f in meta.get("finalizers") or [] if f != finalizer]


def set_controller_reference(
    owner: Mapping[str, Any], obj: dict[str, Any]
) -> dict[str, Any]:
    """Make ``owner`` the controlling owner of ``obj``."""
    owner_meta = owner.get("metadata") or {}
    obj_meta = _meta(obj)
    owner_ns = owner_meta.get("namespace", "")
    if owner_ns and owner_ns != obj_meta.get("namespace", ""):
        raise ValueError("cross-namespace owner references are disallowed")
    ref = {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": owner_meta.get("name", ""),
        "uid": owner_meta.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }
    refs = obj_meta.setdefault("ownerReferences", [])
    same = lambda r: r.get("kind") == ref["kind"] and r.get("name") == ref["name"]  # noqa: E731
    for existing in refs:
        if existing.get("controller") and not same(existing):
            raise ValueError(
                f"object is already owned by {existing.get('kind')} {existing.get('name')}"
            )
    refs[:] = [r for r in refs if not same(r)]
    refs.append(ref)
    return obj