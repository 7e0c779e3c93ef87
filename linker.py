import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import BudgetAccountLink, Transaction


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectionDraft:
    budget_id: int
    link_id: Optional[int]
    transaction_id: int
    category_id: Optional[int] = None
    merchant_name: Optional[str] = None
    payee: Optional[str] = None


class Linker:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._links: dict[int, list[BudgetAccountLink]] = {}

    def links_for_account(self, account_id: int) -> list[BudgetAccountLink]:
        if account_id not in self._links:
            self._links[account_id] = list(
                self.session.scalars(
                    select(BudgetAccountLink)
                    .where(BudgetAccountLink.account_id == account_id)
                    .order_by(BudgetAccountLink.id)
                ).all()
            )
        return self._links[account_id]

    def fan_out(
        self,
        transaction: Transaction,
        links: list[BudgetAccountLink],
        category_for: Callable[[int, Transaction], Optional[int]],
    ) -> list[ProjectionDraft]:
        """One projection per linked budget; none for an unlinked account."""
        return [
            ProjectionDraft(
                budget_id=link.budget_id,
                link_id=link.id,
                transaction_id=transaction.id,
                category_id=category_for(link.budget_id, transaction),
                merchant_name=transaction.merchant_name,
                payee=transaction.payee,
            )
            for link in links
        ]

    def drop_orphans(self, drafts: list[ProjectionDraft]) -> list[ProjectionDraft]:
        """Re-check links right before writing and drop projections whose link is gone."""
        link_ids = {d.link_id for d in drafts if d.link_id is not None}
        if not link_ids:
            return list(drafts)
        live = set(
            self.session.scalars(
                select(BudgetAccountLink.id).where(BudgetAccountLink.id.in_(link_ids))
            ).all()
        )
        kept = [d for d in drafts if d.link_id is None or d.link_id in live]
        for draft in drafts:
            if draft.link_id is not None and draft.link_id not in live:
                logger.warning(
                    f"orphaned_projection: budget_id={draft.budget_id} link_id={draft.link_id} transaction_id={draft.transaction_id}"
                )
        return kept
