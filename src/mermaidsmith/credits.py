"""Credit ledger: gate and charge every generation request up front."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from mermaidsmith import config
from mermaidsmith.errors import (
    AnonymousQuotaExceededError,
    InsufficientCreditsError,
    InvalidInputError,
)
from mermaidsmith.storage.sqlite_store import Owner, SqliteStore, UserCredits

logger = logging.getLogger(__name__)

SIMPLE_COST = 1
COMPLEX_COST = 2
ANONYMOUS_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def request_cost(is_complex: bool) -> int:
    return COMPLEX_COST if is_complex else SIMPLE_COST


class CreditLedger:
    """Validates and deducts credits before any paid model call.

    Authenticated users have a persisted balance that is reset to the daily
    grant on the first request of each calendar day (UTC). Anonymous callers
    have no balance; they are limited by the number of diagrams they created
    in the trailing 24 hours.
    """

    def __init__(
        self,
        store: SqliteStore,
        now: Callable[[], datetime] = _utcnow,
        initial_credits: int | None = None,
        daily_credits: int | None = None,
        anonymous_limit: int | None = None,
    ) -> None:
        self._store = store
        self._now = now
        self._initial = config.INITIAL_CREDITS if initial_credits is None else initial_credits
        self._daily = config.DAILY_CREDITS if daily_credits is None else daily_credits
        self._anonymous_limit = (
            config.ANONYMOUS_DAILY_LIMIT if anonymous_limit is None else anonymous_limit
        )

    def gate(self, owner: Owner, is_complex: bool) -> int | None:
        """Charge for one request or raise.

        Returns the remaining balance for users, None for anonymous callers.

        Raises:
            InsufficientCreditsError: The user cannot afford the request.
            AnonymousQuotaExceededError: The anonymous id is at its daily cap.
        """
        if owner.user_id:
            return self._charge_user(owner.user_id, request_cost(is_complex))
        if owner.anonymous_id:
            self._check_anonymous(owner.anonymous_id)
            return None
        raise InvalidInputError("Anonymous ID is required for unauthenticated users")

    def _charge_user(self, user_id: str, cost: int) -> int:
        today = self._now().date()
        with self._store.transaction():
            row = self._store.get_credits(user_id)

            if row is None:
                if cost > self._initial:
                    raise InsufficientCreditsError("Insufficient credits")
                remaining = self._initial - cost
                self._store.insert_credits(user_id, remaining, today)
                logger.info("Created credits for %s: %d remaining", user_id, remaining)
                return remaining

            if row.last_credit_reset != today:
                # Hard reset: whatever was left yesterday is discarded
                if cost > self._daily:
                    raise InsufficientCreditsError("Insufficient credits")
                remaining = self._daily - cost
                self._store.update_credits(user_id, remaining, last_credit_reset=today)
                logger.info(
                    "Daily reset for %s (was %d): %d remaining", user_id, row.credits, remaining,
                )
                return remaining

            if row.credits < cost:
                logger.info("Insufficient credits for %s: have %d, need %d", user_id, row.credits, cost)
                raise InsufficientCreditsError("Insufficient credits")

            remaining = row.credits - cost
            self._store.update_credits(user_id, remaining)
            logger.debug("Charged %s %d credit(s): %d remaining", user_id, cost, remaining)
            return remaining

    def _check_anonymous(self, anonymous_id: str) -> None:
        since = self._now() - ANONYMOUS_WINDOW
        used = self._store.count_recent_anonymous(anonymous_id, since)
        if used >= self._anonymous_limit:
            logger.info("Anonymous quota reached for %s (%d in 24h)", anonymous_id, used)
            raise AnonymousQuotaExceededError("Please login to generate more diagrams")

    def get_balance(self, owner: Owner) -> dict:
        """Current allowance as the caller would see it, without charging."""
        if owner.anonymous_id:
            used = self._store.count_recent_anonymous(
                owner.anonymous_id, self._now() - ANONYMOUS_WINDOW,
            )
            return {
                "credits": max(self._anonymous_limit - used, 0),
                "anonymous": True,
            }

        row = self._store.get_credits(owner.user_id)  # type: ignore[arg-type]
        today = self._now().date()
        if row is None:
            credits = self._initial
        elif row.last_credit_reset != today:
            credits = self._daily
        else:
            credits = row.credits
        return {
            "credits": credits,
            "anonymous": False,
            "last_credit_reset": row.last_credit_reset.isoformat() if row else None,
            "monthly_credits_granted": row.monthly_credits_granted if row else 0,
        }

    def grant_monthly(self, user_id: str, amount: int | None = None) -> UserCredits:
        """Add a subscription's monthly credits, at most once per calendar month."""
        amount = config.MONTHLY_CREDITS if amount is None else amount
        today = self._now().date()
        with self._store.transaction():
            row = self._store.get_credits(user_id)
            if row is None:
                self._store.insert_credits(user_id, self._initial, today)
                row = self._store.get_credits(user_id)
                assert row is not None

            last = row.last_monthly_grant
            if last is not None and (last.year, last.month) == (today.year, today.month):
                logger.info("Monthly grant for %s already applied on %s", user_id, last)
                return row

            self._store.update_credits(
                user_id,
                row.credits + amount,
                last_monthly_grant=today,
                monthly_credits_granted=row.monthly_credits_granted + amount,
            )
            logger.info("Granted %d monthly credits to %s", amount, user_id)
            updated = self._store.get_credits(user_id)
        assert updated is not None
        return updated
