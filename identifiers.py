"""Human-readable transaction ids.

Aggregator transactions: ``P`` + ``YYYYMMDD`` + 6 random digits + last 6
characters of the external id. Manual transactions: ``M`` + ``YYYYMMDD`` +
6 random digits + the first 3 letters of the merchant, upper-cased and
padded with ``X``. Example: ``P20250105004211k7Xa9Q``.
"""

import logging
import random
from datetime import date
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import InstrumentedAttribute, Session

from errors import IdentifierExhausted


logger = logging.getLogger(__name__)

TakenLookup = Callable[[list[str]], set[str]]


def _counter(rng: random.Random) -> str:
    return f"{rng.randint(0, 999_999):06d}"


def aggregator_candidate(
    txn_date: date, external_id: Optional[str], rng: random.Random
) -> str:
    suffix = (external_id or "")[-6:] or "000000"
    return f"P{txn_date:%Y%m%d}{_counter(rng)}{suffix}"


def manual_candidate(
    txn_date: date, merchant_name: Optional[str], rng: random.Random
) -> str:
    letters = "".join(ch for ch in (merchant_name or "") if ch.isalnum())[:3]
    return f"M{txn_date:%Y%m%d}{_counter(rng)}{letters.upper().ljust(3, 'X')}"


def store_lookup(session: Session, column: InstrumentedAttribute) -> TakenLookup:
    def is_taken(candidates: list[str]) -> set[str]:
        if not candidates:
            return set()
        rows = session.scalars(select(column).where(column.in_(candidates))).all()
        return set(rows)

    return is_taken


class IdentifierGenerator:
    def __init__(
        self,
        is_taken: TakenLookup,
        *,
        rng: Optional[random.Random] = None,
        batch_size: int = 10,
        max_batches: int = 5,
    ) -> None:
        self.is_taken = is_taken
        self.rng = rng or random.SystemRandom()
        self.batch_size = batch_size
        self.max_batches = max_batches
        # ids handed out in this run but not flushed yet
        self._issued: set[str] = set()

    def generate(self, make_candidate: Callable[[random.Random], str]) -> str:
        for attempt in range(1, self.max_batches + 1):
            batch = list(
                dict.fromkeys(make_candidate(self.rng) for _ in range(self.batch_size))
            )
            batch = [candidate for candidate in batch if candidate not in self._issued]
            taken = self.is_taken(batch) if batch else set()
            for candidate in batch:
                if candidate not in taken:
                    self._issued.add(candidate)
                    return candidate
            logger.warning(
                f"identifier_collision: attempt={attempt} batch_size={len(batch)}"
            )
        raise IdentifierExhausted(self.max_batches)

    def for_aggregator(self, txn_date: date, external_id: Optional[str]) -> str:
        return self.generate(lambda rng: aggregator_candidate(txn_date, external_id, rng))

    def for_manual(self, txn_date: date, merchant_name: Optional[str]) -> str:
        return self.generate(lambda rng: manual_candidate(txn_date, merchant_name, rng))
