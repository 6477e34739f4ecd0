"""Random work-item selection that prefers keeping a batch within one file."""

from __future__ import annotations

import random
from collections.abc import Iterable
from pathlib import Path

from agentloop.checklist.models import CheckoutFilters, WorkItem


def filter_items(items: Iterable[WorkItem], filters: CheckoutFilters) -> list[WorkItem]:
    return [item for item in items if filters.allows(item.marker_type)]


def group_by_file(items: Iterable[WorkItem]) -> list[tuple[Path, list[WorkItem]]]:
    """Group items by source file, keeping first-seen file order."""

    groups: dict[Path, list[WorkItem]] = {}
    for item in items:
        groups.setdefault(item.file, []).append(item)
    return list(groups.items())


def select(
    items: Iterable[WorkItem],
    count: int,
    filters: CheckoutFilters,
    *,
    rng: random.Random | None = None,
) -> list[WorkItem]:
    """Pick up to ``count`` eligible items.

    Groups and the items inside each group are shuffled, then whole groups are
    drained one at a time so concurrent workers tend to touch different files.
    """

    filtered = filter_items(items, filters)
    if count <= 0 or not filtered:
        return []
    if count >= len(filtered):
        return filtered

    rng = rng or random.Random()
    groups = group_by_file(filtered)
    rng.shuffle(groups)
    for _, group_items in groups:
        rng.shuffle(group_items)

    selected: list[WorkItem] = []
    for _, group_items in groups:
        selected.extend(group_items[: count - len(selected)])
        if len(selected) >= count:
            break
    return selected
