"""
Video and photo credit ledger.

Video rules:
  - Every account has a monthly fair-use ceiling (MONTHLY_VIDEO_LIMIT) that
    applies no matter how many bundle credits it holds. Usage resets when the
    calendar month changes.
  - Unlimited subscribers only need to be under the ceiling.
  - Everyone else also needs at least one bundle credit.
  - A paid job holds a reservation from the moment it passes the gate until
    commit() (success) or release() (failure, cancellation). Reservations
    count against both the bundle and the ceiling, so concurrent jobs cannot
    spend the same credit.
  - A job is debited at most once: commit() is keyed by job id, and a repeat
    commit for the same id is a no-op.

Photo rules:
  - Unlimited subscribers may always generate step photos.
  - Everyone else needs a photo credit; one photo set costs one credit.

Backends: InMemoryCreditLedger (per-account asyncio locks) and
SupabaseCreditLedger (user_credits + credit_transactions, where the unique
job_id on credit_transactions guards against double debits and pending
reservations are rows of type "video_reservation").
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .. import metrics
from ..config import Settings
from ..errors import ConfigurationError, StorageError
from .locks import KeyedLocks
from .models import CreditAccount, CreditCheck

logger = logging.getLogger(__name__)

MONTHLY_VIDEO_LIMIT = 50
RESERVATION = "video_reservation"
RESERVATION_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def roll_month(account: CreditAccount, now: datetime) -> CreditAccount:
    """Reset monthly usage if `now` is in a different calendar month."""
    reset_at = account.month_reset_at
    if (reset_at.year, reset_at.month) == (now.year, now.month):
        return account
    return account.model_copy(update={"monthly_usage": 0, "month_reset_at": now})


def evaluate(account: CreditAccount, pending: int = 0) -> CreditCheck:
    """Can one more video job start, given `pending` jobs already holding a reservation?"""
    headroom = max(account.monthly_limit - account.monthly_usage - pending, 0)
    if headroom <= 0:
        return CreditCheck(
            allowed=False, remaining=0,
            message=f"Monthly limit of {account.monthly_limit} videos reached. Resets next month.",
        )
    if account.unlimited:
        return CreditCheck(allowed=True, remaining=headroom)
    available = account.bundle_credits - pending
    if available <= 0:
        return CreditCheck(allowed=False, remaining=0, message="No video credits remaining.")
    return CreditCheck(allowed=True, remaining=min(available, headroom))


def debit(account: CreditAccount) -> CreditAccount:
    update = {"monthly_usage": account.monthly_usage + 1}
    if not account.unlimited:
        update["bundle_credits"] = max(account.bundle_credits - 1, 0)
    return account.model_copy(update=update)


def evaluate_photos(account: CreditAccount) -> CreditCheck:
    if account.unlimited:
        return CreditCheck(allowed=True, remaining=account.photo_credits)
    if account.photo_credits <= 0:
        return CreditCheck(
            allowed=False, remaining=0,
            message="You don't have any photo credits. Purchase a photo bundle to continue.",
        )
    return CreditCheck(allowed=True, remaining=account.photo_credits)


def debit_photos(account: CreditAccount) -> CreditAccount:
    if account.unlimited:
        return account
    return account.model_copy(update={"photo_credits": max(account.photo_credits - 1, 0)})


class CreditLedger:
    async def get_balance(self, account_id: str) -> CreditAccount:
        raise NotImplementedError

    async def reserve_or_check(self, account_id: str, job_id: Optional[str] = None) -> CreditCheck:
        """
        Gate one video job.

        Without `job_id` this only checks. With it, an allowed check also
        reserves one video for that job until commit() or release(); asking
        again for a job that already holds a reservation is allowed.
        """
        raise NotImplementedError

    async def commit(self, account_id: str, job_id: str) -> bool:
        """Debit one video for `job_id`. Returns False if that job was already debited."""
        raise NotImplementedError

    async def release(self, account_id: str, job_id: str) -> bool:
        """Drop the reservation of a job that will not be committed. False if it held none."""
        raise NotImplementedError

    async def add_credits(self, account_id: str, amount: int) -> CreditAccount:
        raise NotImplementedError

    async def set_unlimited(self, account_id: str, unlimited: bool) -> CreditAccount:
        raise NotImplementedError

    async def check_photos(self, account_id: str) -> CreditCheck:
        return evaluate_photos(await self.get_balance(account_id))

    async def commit_photos(self, account_id: str) -> CreditAccount:
        raise NotImplementedError

    async def add_photo_credits(self, account_id: str, amount: int) -> CreditAccount:
        raise NotImplementedError


def _log_commit(job_id: str, account: CreditAccount):
    metrics.inc_counter("credits.committed")
    logger.info(
        f"[{job_id}] committed 1 video for {account.account_id} "
        f"(bundle={account.bundle_credits}, month={account.monthly_usage}/{account.monthly_limit})"
    )


class InMemoryCreditLedger(CreditLedger):
    def __init__(
        self,
        monthly_limit: int = MONTHLY_VIDEO_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.monthly_limit = monthly_limit
        self._clock = clock
        self._accounts: dict[str, CreditAccount] = {}
        self._committed: set[str] = set()
        self._reserved: dict[str, set[str]] = {}
        self._locks = KeyedLocks()

    def _load(self, account_id: str) -> CreditAccount:
        now = self._clock()
        account = self._accounts.get(account_id) or CreditAccount(
            account_id=account_id, monthly_limit=self.monthly_limit, month_reset_at=now,
        )
        account = roll_month(account, now)
        self._accounts[account_id] = account
        return account

    def _unreserve(self, account_id: str, job_id: str) -> bool:
        held = self._reserved.get(account_id)
        if not held or job_id not in held:
            return False
        held.discard(job_id)
        if not held:
            del self._reserved[account_id]
        return True

    def reservations(self, account_id: str) -> set[str]:
        return set(self._reserved.get(account_id, ()))

    async def get_balance(self, account_id: str) -> CreditAccount:
        async with self._locks.hold(account_id):
            return self._load(account_id)

    async def reserve_or_check(self, account_id: str, job_id: Optional[str] = None) -> CreditCheck:
        async with self._locks.hold(account_id):
            account = self._load(account_id)
            held = self._reserved.get(account_id, set())
            if job_id is not None and (job_id in held or job_id in self._committed):
                return CreditCheck(allowed=True, remaining=evaluate(account, len(held)).remaining)

            check = evaluate(account, len(held))
            if check.allowed and job_id is not None:
                self._reserved.setdefault(account_id, set()).add(job_id)
                logger.info(f"[{job_id}] reserved 1 video for {account_id}")
            return check

    async def commit(self, account_id: str, job_id: str) -> bool:
        async with self._locks.hold(account_id):
            self._unreserve(account_id, job_id)
            if job_id in self._committed:
                logger.info(f"[{job_id}] credit already committed, skipping")
                return False
            self._committed.add(job_id)
            account = debit(self._load(account_id))
            self._accounts[account_id] = account
        _log_commit(job_id, account)
        return True

    async def release(self, account_id: str, job_id: str) -> bool:
        async with self._locks.hold(account_id):
            released = self._unreserve(account_id, job_id)
        if released:
            logger.info(f"[{job_id}] released video reservation for {account_id}")
        return released

    async def add_credits(self, account_id: str, amount: int) -> CreditAccount:
        async with self._locks.hold(account_id):
            account = self._load(account_id)
            account = account.model_copy(update={"bundle_credits": account.bundle_credits + amount})
            self._accounts[account_id] = account
            return account

    async def set_unlimited(self, account_id: str, unlimited: bool) -> CreditAccount:
        async with self._locks.hold(account_id):
            account = self._load(account_id).model_copy(update={"unlimited": unlimited})
            self._accounts[account_id] = account
            return account

    async def commit_photos(self, account_id: str) -> CreditAccount:
        async with self._locks.hold(account_id):
            account = debit_photos(self._load(account_id))
            self._accounts[account_id] = account
        logger.info(f"Committed 1 photo set for {account_id} ({account.photo_credits} photo credits left)")
        return account

    async def add_photo_credits(self, account_id: str, amount: int) -> CreditAccount:
        async with self._locks.hold(account_id):
            account = self._load(account_id)
            account = account.model_copy(update={"photo_credits": account.photo_credits + amount})
            self._accounts[account_id] = account
            return account


def _is_duplicate(error: Exception) -> bool:
    return getattr(error, "code", None) == "23505" or "duplicate key" in str(error).lower()


class SupabaseCreditLedger(CreditLedger):
    """
    Ledger on the user_credits and credit_transactions tables.

    A reservation is a credit_transactions row of type "video_reservation".
    It is inserted first and then checked against the reservations ahead of
    it (ordered by id), so two processes racing for the last credit agree on
    which one gets it. commit() turns the row into the "video_generation"
    debit; release() deletes it. Rows older than RESERVATION_TTL no longer
    count, so a crashed worker cannot hold credits forever.
    """

    def __init__(self, url: str = "", service_key: str = "", monthly_limit: int = MONTHLY_VIDEO_LIMIT,
                 client=None, clock: Callable[[], datetime] = _utcnow):
        self.monthly_limit = monthly_limit
        self._url = url
        self._key = service_key
        self._client = client
        self._clock = clock

    def _sb(self):
        if self._client is None:
            from supabase import create_client

            if not self._url or not self._key:
                raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(self._url, self._key)
        return self._client

    def _row_to_account(self, row: dict) -> CreditAccount:
        reset_at = row.get("month_reset_at")
        return CreditAccount(
            account_id=row["user_id"],
            bundle_credits=row.get("video_credits") or 0,
            photo_credits=row.get("photo_credits") or 0,
            unlimited=bool(row.get("unlimited")),
            monthly_usage=row.get("videos_generated_this_month") or 0,
            monthly_limit=self.monthly_limit,
            month_reset_at=datetime.fromisoformat(reset_at) if reset_at else self._clock(),
        )

    def _save(self, account: CreditAccount):
        self._sb().table("user_credits").update({
            "video_credits": account.bundle_credits,
            "photo_credits": account.photo_credits,
            "unlimited": account.unlimited,
            "videos_generated_this_month": account.monthly_usage,
            "month_reset_at": account.month_reset_at.isoformat(),
            "updated_at": self._clock().isoformat(),
        }).eq("user_id", account.account_id).execute()

    def _load(self, account_id: str) -> CreditAccount:
        sb = self._sb()
        rows = sb.table("user_credits").select("*").eq("user_id", account_id).limit(1).execute().data
        if not rows:
            now = self._clock()
            sb.table("user_credits").insert({
                "user_id": account_id,
                "video_credits": 0,
                "photo_credits": 0,
                "unlimited": False,
                "videos_generated_this_month": 0,
                "month_reset_at": now.isoformat(),
            }).execute()
            return CreditAccount(account_id=account_id, monthly_limit=self.monthly_limit, month_reset_at=now)

        account = self._row_to_account(rows[0])
        rolled = roll_month(account, self._clock())
        if rolled is not account:
            logger.info(f"Monthly video usage reset for {account_id}")
            self._save(rolled)
        return rolled

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Credit ledger query failed: {e}", exc_info=True)
            raise StorageError(f"Credit ledger query failed: {e}") from e

    async def get_balance(self, account_id: str) -> CreditAccount:
        return await self._run(self._load, account_id)

    # ── Reservations ─────────────────────────────────────────────────────

    def _pending(self, account_id: str) -> list[dict]:
        rows = (
            self._sb().table("credit_transactions").select("*")
            .eq("user_id", account_id).eq("type", RESERVATION).order("id").execute().data
        )
        cutoff = self._clock() - RESERVATION_TTL
        return [
            r for r in rows
            if not r.get("created_at") or datetime.fromisoformat(r["created_at"]) > cutoff
        ]

    def _reserve(self, account_id: str, job_id: Optional[str]) -> CreditCheck:
        account = self._load(account_id)
        pending = self._pending(account_id)
        ahead = [r for r in pending if r.get("job_id") != job_id]
        if job_id is not None and len(ahead) < len(pending):
            return CreditCheck(allowed=True, remaining=evaluate(account, len(pending)).remaining)

        check = evaluate(account, len(pending))
        if not check.allowed or job_id is None:
            return check

        try:
            self._sb().table("credit_transactions").insert({
                "user_id": account_id,
                "amount": 0,
                "type": RESERVATION,
                "description": "Reserved for recipe video generation",
                "job_id": job_id,
                "created_at": self._clock().isoformat(),
            }).execute()
        except Exception as e:
            if _is_duplicate(e):
                # the job was already committed
                return check
            raise

        position = next(
            (i for i, r in enumerate(self._pending(account_id)) if r.get("job_id") == job_id), 0
        )
        confirmed = evaluate(account, position)
        if not confirmed.allowed:
            self._delete_reservation(job_id)
            return confirmed
        logger.info(f"[{job_id}] reserved 1 video for {account_id}")
        return check

    async def reserve_or_check(self, account_id: str, job_id: Optional[str] = None) -> CreditCheck:
        return await self._run(self._reserve, account_id, job_id)

    def _delete_reservation(self, job_id: str) -> bool:
        deleted = (
            self._sb().table("credit_transactions").delete()
            .eq("job_id", job_id).eq("type", RESERVATION).execute().data
        )
        return bool(deleted)

    async def release(self, account_id: str, job_id: str) -> bool:
        released = await self._run(self._delete_reservation, job_id)
        if released:
            logger.info(f"[{job_id}] released video reservation for {account_id}")
        return released

    def _commit(self, account_id: str, job_id: str) -> Optional[CreditAccount]:
        account = self._load(account_id)
        transaction = {
            "amount": 0 if account.unlimited else -1,
            "type": "video_generation",
            "description": "Recipe video generation",
        }
        table = self._sb().table
        converted = (
            table("credit_transactions").update(transaction)
            .eq("job_id", job_id).eq("type", RESERVATION).execute().data
        )
        if not converted:
            try:
                table("credit_transactions").insert(
                    {"user_id": account_id, "job_id": job_id, **transaction}
                ).execute()
            except Exception as e:
                if _is_duplicate(e):
                    return None
                raise
        account = debit(account)
        self._save(account)
        return account

    async def commit(self, account_id: str, job_id: str) -> bool:
        account = await self._run(self._commit, account_id, job_id)
        if account is None:
            logger.info(f"[{job_id}] credit already committed, skipping")
            return False
        _log_commit(job_id, account)
        return True

    # ── Balances ─────────────────────────────────────────────────────────

    def _add(self, account_id: str, amount: int) -> CreditAccount:
        account = self._load(account_id)
        account = account.model_copy(update={"bundle_credits": account.bundle_credits + amount})
        self._save(account)
        self._sb().table("credit_transactions").insert({
            "user_id": account_id,
            "amount": amount,
            "type": "purchase",
            "description": f"Added {amount} video credits",
        }).execute()
        return account

    async def add_credits(self, account_id: str, amount: int) -> CreditAccount:
        return await self._run(self._add, account_id, amount)

    def _set_unlimited(self, account_id: str, unlimited: bool) -> CreditAccount:
        account = self._load(account_id).model_copy(update={"unlimited": unlimited})
        self._save(account)
        return account

    async def set_unlimited(self, account_id: str, unlimited: bool) -> CreditAccount:
        return await self._run(self._set_unlimited, account_id, unlimited)

    def _commit_photos(self, account_id: str) -> CreditAccount:
        account = debit_photos(self._load(account_id))
        self._save(account)
        self._sb().table("credit_transactions").insert({
            "user_id": account_id,
            "amount": 0 if account.unlimited else -1,
            "type": "photo_generation",
            "description": "Step photo generation",
        }).execute()
        return account

    async def commit_photos(self, account_id: str) -> CreditAccount:
        account = await self._run(self._commit_photos, account_id)
        logger.info(f"Committed 1 photo set for {account_id} ({account.photo_credits} photo credits left)")
        return account

    def _add_photos(self, account_id: str, amount: int) -> CreditAccount:
        account = self._load(account_id)
        account = account.model_copy(update={"photo_credits": account.photo_credits + amount})
        self._save(account)
        self._sb().table("credit_transactions").insert({
            "user_id": account_id,
            "amount": amount,
            "type": "purchase",
            "description": f"Added {amount} photo credits",
        }).execute()
        return account

    async def add_photo_credits(self, account_id: str, amount: int) -> CreditAccount:
        return await self._run(self._add_photos, account_id, amount)


def build_credit_ledger(settings: Settings) -> CreditLedger:
    if settings.data_backend == "supabase":
        return SupabaseCreditLedger(
            url=settings.supabase_url,
            service_key=settings.supabase_service_role_key,
            monthly_limit=settings.monthly_video_limit,
        )
    return InMemoryCreditLedger(monthly_limit=settings.monthly_video_limit)
