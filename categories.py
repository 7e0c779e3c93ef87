from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from errors import ConfigurationError
from models import Category, CategoryGroup
from seed import OTHER_NAME


logger = logging.getLogger(__name__)

FALLBACK_NAMES = ("other", "others")


def closest_name(name: str, candidates: Iterable[str]) -> Optional[str]:
    """Case-insensitive exact match, else the only candidate one edit away."""
    needle = (name or "").strip().lower()
    if not needle:
        return None
    lowered = {candidate.strip().lower(): candidate for candidate in candidates}
    if needle in lowered:
        return lowered[needle]

    best_distance: Optional[int] = None
    best: list[str] = []
    for key, candidate in lowered.items():
        dist = int(Levenshtein.distance(needle, key))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [candidate]
        elif dist == best_distance:
            best.append(candidate)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


@dataclass(frozen=True)
class CategoryEntry:
    id: int
    name: str
    budget_id: Optional[int] = None
    is_composite: bool = False
    # (component category name, weight percentage)
    components: tuple[tuple[str, Decimal], ...] = ()


@dataclass(frozen=True)
class GroupEntry:
    id: int
    name: str
    is_enabled: bool = True
    budget_id: Optional[int] = None
    categories: tuple[CategoryEntry, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ResolvedCategory:
    category_id: int
    category_name: str
    group_id: int
    group_name: str
    is_fallback: bool = False


@lru_cache(maxsize=8)
def load_category_mapping(path: str) -> Mapping[str, str]:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Unable to read category map {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Category map {path} must be a JSON object")
    return MappingProxyType(
        {str(label).strip().upper(): str(name) for label, name in payload.items()}
    )


def load_category_groups(
    session: Session, budget_id: Optional[int] = None
) -> list[GroupEntry]:
    """Built-in groups overlaid with the budget's custom groups and categories.

    Budget-scoped rows are listed before built-in ones so that a custom
    category shadows a built-in category with the same name.
    """
    scope = [CategoryGroup.budget_id.is_(None)]
    if budget_id is not None:
        scope.append(CategoryGroup.budget_id == budget_id)
    groups = session.scalars(
        select(CategoryGroup)
        .options(selectinload(CategoryGroup.categories))
        .where(or_(*scope))
        .order_by(CategoryGroup.budget_id.is_(None), CategoryGroup.order, CategoryGroup.id)
    ).all()

    entries: list[GroupEntry] = []
    for group in groups:
        categories = []
        for category in sorted(
            group.categories, key=lambda c: (c.budget_id is None, c.order, c.id)
        ):
            if category.budget_id is not None and category.budget_id != budget_id:
                continue
            components = tuple(
                (str(part["category_name"]), Decimal(str(part["weight"])))
                for part in category.composite_parts
            )
            categories.append(
                CategoryEntry(
                    id=category.id,
                    name=category.name,
                    budget_id=category.budget_id,
                    is_composite=category.is_composite,
                    components=components,
                )
            )
        entries.append(
            GroupEntry(
                id=group.id,
                name=group.name,
                is_enabled=group.is_enabled,
                budget_id=group.budget_id,
                categories=tuple(categories),
            )
        )
    return entries


class CategoryResolver:
    """Maps aggregator category labels onto the current category groups.

    ``resolve_one`` never raises: anything it cannot place lands in the
    Other category.
    """

    def __init__(self, mapping: Mapping[str, str], groups: Iterable[GroupEntry]):
        self.mapping = mapping
        self._by_name: dict[str, ResolvedCategory] = {}
        self._by_id: dict[int, ResolvedCategory] = {}
        for group in groups:
            for category in group.categories:
                resolved = ResolvedCategory(
                    category_id=category.id,
                    category_name=category.name,
                    group_id=group.id,
                    group_name=group.name,
                )
                self._by_name.setdefault(category.name.strip().lower(), resolved)
                self._by_id[category.id] = resolved
        self.fallback = self._find_fallback(groups)

    def _find_fallback(self, groups: Iterable[GroupEntry]) -> ResolvedCategory:
        for name in FALLBACK_NAMES:
            found = self._by_name.get(name)
            if found and found.group_name.strip().lower() in FALLBACK_NAMES:
                return ResolvedCategory(
                    category_id=found.category_id,
                    category_name=found.category_name,
                    group_id=found.group_id,
                    group_name=found.group_name,
                    is_fallback=True,
                )
        for name in FALLBACK_NAMES:
            found = self._by_name.get(name)
            if found:
                return ResolvedCategory(
                    category_id=found.category_id,
                    category_name=found.category_name,
                    group_id=found.group_id,
                    group_name=found.group_name,
                    is_fallback=True,
                )
        raise ConfigurationError(
            f"No '{OTHER_NAME}' category configured to use as the fallback"
        )

    def by_id(self, category_id: Optional[int]) -> Optional[ResolvedCategory]:
        if category_id is None:
            return None
        return self._by_id.get(category_id)

    def find(self, name: str, *, fuzzy: bool = False) -> Optional[ResolvedCategory]:
        """Look a category up by name, case-insensitively.

        Mapped names must match exactly; ``fuzzy`` also accepts a unique
        name one edit away and is meant for names a person typed.
        """
        needle = (name or "").strip().lower()
        if not fuzzy:
            return self._by_name.get(needle)
        match = closest_name(needle, self._by_name)
        return self._by_name[match] if match is not None else None

    def resolve_one(self, label: Optional[str]) -> ResolvedCategory:
        clean = (label or "").strip()
        if not clean:
            return self.fallback
        name = self.mapping.get(clean.upper(), OTHER_NAME)
        resolved = self.find(name)
        if resolved is None:
            logger.info(f"category_fallback: label={clean} mapped_name={name}")
            return self.fallback
        return resolved

    def resolve(
        self, labels: Iterable[Optional[str]]
    ) -> dict[Optional[str], ResolvedCategory]:
        return {label: self.resolve_one(label) for label in labels}


def resolver_for_budget(
    session: Session, mapping: Mapping[str, str], budget_id: Optional[int] = None
) -> CategoryResolver:
    return CategoryResolver(mapping, load_category_groups(session, budget_id))
