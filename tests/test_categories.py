import json

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from categories import (
    CategoryEntry,
    CategoryResolver,
    GroupEntry,
    closest_name,
    load_category_groups,
    load_category_mapping,
    resolver_for_budget,
)
from config import BASE_DIR
from database import Base
from errors import ConfigurationError
from models import Budget, Category, CategoryGroup
from schemas import CategoryGroupIn, CategoryIn
from seed import seed_default_categories
from services import CategoryService


GROUPS = [
    GroupEntry(
        id=1,
        name="Food & Drink",
        categories=(CategoryEntry(id=10, name="Coffee"), CategoryEntry(id=11, name="Groceries")),
    ),
    GroupEntry(id=2, name="Other", is_enabled=False, categories=(CategoryEntry(id=20, name="Other"),)),
]


def test_label_resolves_through_mapping_case_insensitively() -> None:
    resolver = CategoryResolver({"FOOD_AND_DRINK_COFFEE": "Coffee"}, GROUPS)

    resolved = resolver.resolve_one("food_and_drink_coffee")

    assert resolved.category_id == 10
    assert resolved.group_name == "Food & Drink"
    assert not resolved.is_fallback


def test_mapped_names_must_match_exactly() -> None:
    groups = GROUPS + [
        GroupEntry(id=3, name="Government", categories=(CategoryEntry(id=30, name="Tax"),))
    ]
    resolver = CategoryResolver(
        {"TRANSPORTATION_TAXIS": "Taxi", "FOOD_AND_DRINK_GROCERIES": "Grocerie"}, groups
    )

    assert resolver.resolve_one("TRANSPORTATION_TAXIS").is_fallback
    assert resolver.resolve_one("FOOD_AND_DRINK_GROCERIES").category_id == 20


def test_typed_names_tolerate_a_single_typo() -> None:
    resolver = CategoryResolver({}, GROUPS)

    assert resolver.find("grocerie", fuzzy=True).category_id == 11
    assert resolver.find("grocerie") is None
    assert closest_name("COFEE", ["Coffee", "Groceries"]) == "Coffee"
    assert closest_name("Cat", ["Car", "Cab"]) is None
    assert closest_name("  ", ["Coffee"]) is None


@pytest.mark.parametrize("label", [None, "", "   ", "UNMAPPED_LABEL", "FAR_AWAY"])
def test_unresolvable_labels_fall_back_to_other(label) -> None:
    resolver = CategoryResolver({"FAR_AWAY": "Spaceships"}, GROUPS)

    resolved = resolver.resolve_one(label)

    assert resolved.category_id == 20


def test_resolver_requires_other_category() -> None:
    with pytest.raises(ConfigurationError):
        CategoryResolver({}, GROUPS[:1])


def test_resolve_many_labels_at_once() -> None:
    resolver = CategoryResolver({"FOOD_AND_DRINK_COFFEE": "Coffee"}, GROUPS)

    resolved = resolver.resolve(["FOOD_AND_DRINK_COFFEE", None])

    assert resolved["FOOD_AND_DRINK_COFFEE"].category_id == 10
    assert resolved[None].is_fallback


def test_category_mapping_errors(tmp_path) -> None:
    not_an_object = tmp_path / "list.json"
    not_an_object.write_text(json.dumps(["Coffee"]), encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_category_mapping(str(tmp_path / "missing.json"))
    with pytest.raises(ConfigurationError):
        load_category_mapping(str(not_an_object))


def test_bundled_mapping_only_names_seeded_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        mapping = load_category_mapping(str(BASE_DIR / "category_map.json"))
        resolver = resolver_for_budget(session, mapping)

        for label, name in mapping.items():
            assert resolver.resolve_one(label).category_name == name, label


def test_seeding_is_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        first = seed_default_categories(session)
        second = seed_default_categories(session)
        other = session.scalar(select(CategoryGroup).where(CategoryGroup.name == "Other"))

        assert first > 0
        assert second == 0
        assert other.is_enabled is False


def test_budget_custom_categories_are_scoped_to_their_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        mine, theirs = Budget(name="Mine"), Budget(name="Theirs")
        session.add_all([mine, theirs])
        session.commit()

        service = CategoryService(session)
        pets = service.create_group(mine.id, CategoryGroupIn(name="Pets"))
        service.create_category(mine.id, CategoryIn(name="Pet Food", group_id=pets.id))

        mine_names = {
            c.name for g in load_category_groups(session, mine.id) for c in g.categories
        }
        theirs_names = {
            c.name for g in load_category_groups(session, theirs.id) for c in g.categories
        }
        assert "Pet Food" in mine_names
        assert "Pet Food" not in theirs_names
        assert "Coffee" in theirs_names

        resolver = resolver_for_budget(session, {"PETS_FOOD": "Pet Food"}, mine.id)
        assert resolver.resolve_one("PETS_FOOD").category_name == "Pet Food"


def test_composite_category_validation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        budget = Budget(name="Household")
        session.add(budget)
        session.commit()
        group = session.scalar(select(CategoryGroup).where(CategoryGroup.name == "Food & Drink"))
        service = CategoryService(session)

        with pytest.raises(ValueError, match="sum to 100"):
            CategoryIn(
                name="Costco",
                group_id=group.id,
                composite=[
                    {"category_name": "Groceries", "weight": "60"},
                    {"category_name": "Shopping", "weight": "30"},
                ],
            )
        with pytest.raises(ValueError, match="Unknown composite category"):
            service.create_category(
                budget.id,
                CategoryIn(
                    name="Costco",
                    group_id=group.id,
                    composite=[
                        {"category_name": "Groceries", "weight": "60"},
                        {"category_name": "Spaceships", "weight": "40"},
                    ],
                ),
            )

        costco = service.create_category(
            budget.id,
            CategoryIn(
                name="Costco",
                group_id=group.id,
                composite=[
                    {"category_name": "Groceries", "weight": "60"},
                    {"category_name": "Shopping", "weight": "40"},
                ],
            ),
        )

        stored = session.get(Category, costco.id)
        assert stored.is_composite
        assert [part["category_name"] for part in stored.composite_parts] == [
            "Groceries",
            "Shopping",
        ]


def test_typed_composite_names_are_stored_canonical() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_categories(session)
        budget = Budget(name="Household")
        session.add(budget)
        session.commit()
        group = session.scalar(select(CategoryGroup).where(CategoryGroup.name == "Food & Drink"))

        warehouse = CategoryService(session).create_category(
            budget.id,
            CategoryIn(
                name="Warehouse Club",
                group_id=group.id,
                composite=[
                    {"category_name": "groceries", "weight": "70"},
                    {"category_name": "Shoping", "weight": "30"},
                ],
            ),
        )

        stored = session.get(Category, warehouse.id)
        assert [part["category_name"] for part in stored.composite_parts] == [
            "Groceries",
            "Shopping",
        ]
