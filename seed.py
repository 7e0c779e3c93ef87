"""Built-in category groups shared by every budget."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Category, CategoryGroup


logger = logging.getLogger(__name__)

OTHER_NAME = "Other"
INCOME_GROUP_NAME = "Income"

# (group name, description, enabled, [(category name, description), ...])
DEFAULT_CATEGORY_GROUPS: tuple[tuple[str, str, bool, tuple[tuple[str, str], ...]], ...] = (
    (
        "Income",
        "Income from various sources",
        True,
        (("Income", "Income from various sources"),),
    ),
    (
        "Savings & Transfers",
        "Savings and money transfers",
        True,
        (
            ("Inbound Transfer", "Loans and cash advances deposited into a bank account"),
            ("Investment Income", "Inbound transfers to an investment or retirement account"),
            ("Account Transfer", "General inbound transfers from another account"),
            ("Other Inbound", "Other miscellaneous inbound transactions"),
            ("Investment Transfer", "Transfers to an investment or retirement account"),
            ("Outbound Transfer", "Outbound transfers to savings accounts"),
            ("Withdrawal", "Withdrawals from a bank account"),
            ("Other Outbound", "Other miscellaneous outbound transactions"),
        ),
    ),
    (
        "Debt Payments",
        "Debt and loan payments",
        True,
        (("Debt Payments", "Payments on mortgages, loans and credit cards"),),
    ),
    (
        "Bank Fees",
        "Bank and financial institution fees",
        True,
        (("Bank Fees", "Overdraft, ATM and other bank fees"),),
    ),
    (
        "Entertainment",
        "Entertainment and recreation expenses",
        True,
        (
            ("Gambling", "Gambling, casinos, and sports betting"),
            ("Music & Audio", "Music purchases and streaming services"),
            ("Events & Amusement", "Sporting events, concerts, museums, amusement parks"),
            ("TV & Movies", "Movie streaming services and movie theaters"),
            ("Video Games", "Digital and in-person video game purchases"),
            ("Other Entertainment", "Other miscellaneous entertainment purchases"),
        ),
    ),
    (
        "Food & Drink",
        "Food, dining and groceries",
        True,
        (
            ("Alcohol", "Beer, Wine & Liquor Stores"),
            ("Coffee", "Purchases at coffee shops or cafes"),
            ("Fast Food", "Dining expenses for fast food chains"),
            ("Groceries", "Fresh produce and groceries, including farmers' markets"),
            ("Dining Out", "Restaurants, bars, gastropubs, and diners"),
            ("Vending Machines", "Purchases made at vending machine operators"),
            ("Other Food & Drink", "Desserts, juice bars, delis and similar"),
        ),
    ),
    (
        "Retail & Goods",
        "Shopping and retail purchases",
        True,
        (
            ("Shopping", "Retail stores with wide ranges of consumer goods"),
            ("Online Marketplaces", "Multi-purpose e-commerce platforms"),
            ("Superstores", "Superstores selling groceries and general merchandise"),
        ),
    ),
    (
        "Home Improvement",
        "Home maintenance and improvements",
        True,
        (
            ("Furniture", "Furniture, bedding, and home accessories"),
            ("Hardware", "Building materials, hardware stores, paint, and wallpaper"),
            ("Repair & Maintenance", "Plumbing, lighting, gardening, and roofing"),
            ("Security", "Home security system purchases"),
            ("Other Home Improvement", "Pool installation, pest control and similar"),
        ),
    ),
    (
        "Medical",
        "Healthcare and medical expenses",
        True,
        (
            ("Dental Care", "Dentists and general dental care"),
            ("Eye Care", "Optometrists, contacts, and glasses stores"),
            ("Nursing Care", "Nursing care and facilities"),
            ("Pharmacies & Supplements", "Pharmacies and nutrition shops"),
            ("Primary Care", "Doctors and physicians"),
            ("Veterinary Services", "Prevention and care procedures for animals"),
            ("Other Medical", "Blood work, hospitals, ambulances and similar"),
        ),
    ),
    (
        "Personal Care",
        "Personal care and services",
        True,
        (
            ("Gyms & Fitness", "Gyms, fitness centers, and workout classes"),
            ("Hair & Beauty", "Haircuts, manicures, spa and beauty products"),
            ("Laundry & Dry Cleaning", "Wash and fold, and dry cleaning expenses"),
            ("Other Personal Care", "Mental health apps and other personal care"),
        ),
    ),
    (
        "General Services",
        "Various professional services",
        True,
        (
            ("Financial Planning", "Financial planning, tax and accounting services"),
            ("Automotive", "Oil changes, car washes, repairs, and towing"),
            ("Childcare", "Babysitters and daycare"),
            ("Consulting & Legal", "Consulting and legal services"),
            ("Education", "School, professional school and college tuition"),
            ("Insurance", "Insurance for auto, home, and healthcare"),
            ("Postage & Shipping", "Mail, packaging, and shipping services"),
            ("Storage", "Storage services and facilities"),
            ("Other Services", "Advertising, cloud storage and other services"),
        ),
    ),
    (
        "Government & Non-Profit",
        "Government and charitable expenses",
        True,
        (
            ("Donations", "Charitable, political, and religious donations"),
            ("Government Services", "Licences, passport renewal and similar"),
            ("Tax Payment", "Tax payments, including income and property taxes"),
            ("Other Government & Non-Profit", "Other government and non-profit agencies"),
        ),
    ),
    (
        "Transport & Travel",
        "Transportation and travel costs",
        True,
        (
            ("Bikes & Scooters", "Bike and scooter rentals"),
            ("Transportation", "Purchases at a gas station"),
            ("Other Transportation", "Other miscellaneous transportation expenses"),
            ("Flights", "Airline expenses"),
            ("Lodging", "Hotels, motels, and hosted accommodation"),
            ("Rental Cars", "Rental cars, charter buses, and trucks"),
            ("Other Travel", "Other miscellaneous travel expenses"),
        ),
    ),
    (
        "Rent & Utilities",
        "Housing rent and utility bills",
        True,
        (
            ("Gas & Electricity", "Gas and electricity bills"),
            ("Internet & Cable", "Internet and cable bills"),
            ("Rent", "Rent payment"),
            ("Sewage & Waste", "Sewage and garbage disposal bills"),
            ("Telephone", "Cell phone bills"),
            ("Water", "Water bills"),
            ("Other Utilities", "Other miscellaneous utility bills"),
        ),
    ),
    (
        OTHER_NAME,
        "Other catch-all category",
        False,
        ((OTHER_NAME, "Other catch-all category"),),
    ),
)


def seed_default_categories(session: Session) -> int:
    """Insert any missing built-in groups and categories. Returns rows added."""
    existing_groups = {
        group.name: group
        for group in session.scalars(
            select(CategoryGroup).where(CategoryGroup.budget_id.is_(None))
        ).all()
    }
    added = 0
    for group_order, (group_name, group_desc, enabled, categories) in enumerate(
        DEFAULT_CATEGORY_GROUPS
    ):
        group = existing_groups.get(group_name)
        if group is None:
            group = CategoryGroup(
                name=group_name,
                description=group_desc,
                is_enabled=enabled,
                order=group_order,
            )
            session.add(group)
            session.flush()
            added += 1
        known = {
            category.name
            for category in session.scalars(
                select(Category).where(
                    Category.group_id == group.id, Category.budget_id.is_(None)
                )
            ).all()
        }
        for order, (name, description) in enumerate(categories):
            if name in known:
                continue
            session.add(
                Category(
                    group_id=group.id,
                    name=name,
                    description=description,
                    order=order,
                )
            )
            added += 1
    session.flush()
    if added:
        logger.info(f"seed_default_categories: added={added}")
    return added
