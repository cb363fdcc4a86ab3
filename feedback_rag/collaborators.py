"""Contracts for the feedback and organization-profile collaborators.

The RAG core reads feedback content and organization profiles from systems
it does not own. The in-memory implementations back the CLI and the tests.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .models import CustomerSegment, FeedbackItem, OrganizationProfile


@runtime_checkable
class FeedbackStore(Protocol):
    async def get_feedback_items(
        self, organization_id: str, ids: list[str]
    ) -> list[FeedbackItem]:
        """Return the items that exist among ``ids``; unknown ids are omitted."""
        ...


@runtime_checkable
class OrganizationProfileStore(Protocol):
    async def get_organization_profile(
        self, organization_id: str
    ) -> OrganizationProfile | None: ...


class InMemoryFeedbackStore:
    """Feedback items held in a dict keyed by organization."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, FeedbackItem]] = {}

    def add(self, organization_id: str, item: FeedbackItem) -> None:
        self._items.setdefault(organization_id, {})[item.id] = item

    def remove(self, organization_id: str, item_id: str) -> None:
        self._items.get(organization_id, {}).pop(item_id, None)

    def item_ids(self, organization_id: str) -> list[str]:
        return list(self._items.get(organization_id, {}))

    async def get_feedback_items(
        self, organization_id: str, ids: list[str]
    ) -> list[FeedbackItem]:
        items = self._items.get(organization_id, {})
        return [items[item_id] for item_id in ids if item_id in items]

    @classmethod
    def from_json(cls, organization_id: str, path: Path) -> InMemoryFeedbackStore:
        """Load a JSON list of feedback objects.

        Each object needs ``id``, ``title`` and ``description``; ``category``,
        ``sentiment`` and ``metadata`` are optional.

        Returns:
            A store holding the file's items under ``organization_id``.
        """
        store = cls()
        data: list[dict[str, Any]] = json.loads(Path(path).read_text(encoding="utf-8"))
        for entry in data:
            store.add(
                organization_id,
                FeedbackItem(
                    id=str(entry["id"]),
                    title=entry.get("title", ""),
                    description=entry.get("description", ""),
                    category=entry.get("category"),
                    sentiment=entry.get("sentiment"),
                    metadata=dict(entry.get("metadata") or {}),
                ),
            )
        return store


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._profiles: dict[str, OrganizationProfile] = {}

    def put(self, organization_id: str, profile: OrganizationProfile) -> None:
        self._profiles[organization_id] = profile

    async def get_organization_profile(
        self, organization_id: str
    ) -> OrganizationProfile | None:
        return self._profiles.get(organization_id)

    @classmethod
    def from_json(cls, organization_id: str, path: Path) -> InMemoryProfileStore:
        store = cls()
        data: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
        segments = [
            CustomerSegment(
                name=segment["name"],
                characteristics=list(segment.get("characteristics", [])),
                value=segment.get("value", "SMB"),
            )
            for segment in data.pop("customer_segments", [])
        ]
        store.put(
            organization_id,
            OrganizationProfile(customer_segments=segments, **data),
        )
        return store
