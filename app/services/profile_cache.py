"""
In-process read-through cache of user plan profiles.

Entries are display hints: the plan state machine always re-fetches from
Stripe before mutating anything. invalidate() is the single synchronous
eviction point; webhook handlers publish invalidations to a queue drained by
a background worker.
"""
import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core import config
from app.core.clock import as_utc, utcnow
from app.core.plan_catalog import PlanCatalog
from app.db.models.pending_plan_change import PendingPlanChange
from app.db.models.user import User
from app.services.subscription_mapping import CANCELED, TRIALING
from app.services.subscription_sync import SubscriptionSync, get_pending_change

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingChangeSnapshot:
    kind: str
    target_plan_id: str
    effective_at: datetime

    @classmethod
    def from_row(cls, row: Optional[PendingPlanChange]) -> Optional["PendingChangeSnapshot"]:
        if row is None:
            return None
        return cls(kind=row.kind, target_plan_id=row.target_plan_id, effective_at=as_utc(row.effective_at))


@dataclass(frozen=True)
class ProfileEntry:
    user_id: int
    plan_id: str
    subscription_id: Optional[str]
    status: Optional[str]
    current_period_end: Optional[datetime]
    pending_change: Optional[PendingChangeSnapshot]
    cached_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class InvalidationMessage:
    user_id: int
    fresh_entry: Optional[ProfileEntry] = None
    # invalidate() count for the user when the message was published
    generation: int = 0


_STOP = object()


def smart_ttl(
    plan_id: str,
    free_plan_id: str,
    status: Optional[str],
    current_period_end: Optional[datetime],
    now: datetime,
) -> timedelta:
    """
    Cache lifetime that shrinks as the renewal date approaches.

    > 7 days to renewal: 24h; 3-7 days: 6h; 1-3 days: 1h; < 1 day: 15min.
    Canceled or trialing subscriptions: 1h. Free users: 24h.
    """
    if status in (CANCELED, TRIALING):
        return timedelta(hours=1)
    if plan_id == free_plan_id or current_period_end is None:
        return timedelta(hours=24)

    remaining = as_utc(current_period_end) - now
    if remaining > timedelta(days=7):
        return timedelta(hours=24)
    if remaining > timedelta(days=3):
        return timedelta(hours=6)
    if remaining > timedelta(days=1):
        return timedelta(hours=1)
    return timedelta(minutes=15)


class ProfileCache:
    """Thread-safe per-user profile cache with queued invalidation."""

    def __init__(
        self,
        catalog: PlanCatalog,
        gateway,
        sync: Optional[SubscriptionSync] = None,
        max_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.sync = sync or SubscriptionSync(catalog, gateway)
        self.max_ttl = timedelta(seconds=max_ttl_seconds or config.PROFILE_CACHE_TTL_SECONDS)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, ProfileEntry] = {}
        self._generations: Dict[int, int] = {}
        self._queue: "queue.Queue" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def peek(self, user_id: int) -> Optional[ProfileEntry]:
        """Cached entry if present and fresh; never touches the gateway."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and not entry.is_fresh(now):
                del self._entries[user_id]
                return None
            return entry

    def get(self, db: Session, user: User) -> ProfileEntry:
        """Fresh entry, re-deriving from Stripe on miss or expiry."""
        entry = self.peek(user.id)
        if entry is not None:
            return entry

        if user.stripe_subscription_id:
            subscription = self.gateway.fetch(user.stripe_subscription_id)
            pending_row = self.sync.sync_user(db, user, subscription)
        else:
            pending_row = get_pending_change(db, user.id)

        entry = self.build_entry(user, pending_row)
        self.store(entry)
        logger.debug(f"Profile cache filled: user_id={user.id}, plan={entry.plan_id}")
        return entry

    def build_entry(self, user: User, pending_row: Optional[PendingPlanChange]) -> ProfileEntry:
        """Entry from an already-reconciled profile row."""
        now = self._clock()
        plan_id = self.catalog.resolve(user.plan_id).id
        period_end = as_utc(user.current_period_end)
        ttl = min(
            smart_ttl(plan_id, self.catalog.free_plan.id, user.plan_status, period_end, now),
            self.max_ttl,
        )
        return ProfileEntry(
            user_id=user.id,
            plan_id=plan_id,
            subscription_id=user.stripe_subscription_id,
            status=user.plan_status,
            current_period_end=period_end,
            pending_change=PendingChangeSnapshot.from_row(pending_row),
            cached_at=now,
            expires_at=now + ttl,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, entry: ProfileEntry) -> None:
        with self._lock:
            self._entries[entry.user_id] = entry

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            removed = self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        if removed is not None:
            logger.debug(f"Profile cache invalidated: user_id={user_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Queued invalidation
    # ------------------------------------------------------------------

    def publish_invalidation(self, user_id: int, fresh_entry: Optional[ProfileEntry] = None) -> None:
        with self._lock:
            generation = self._generations.get(user_id, 0)
        self._queue.put(InvalidationMessage(user_id=user_id, fresh_entry=fresh_entry, generation=generation))

    def _handle(self, message: InvalidationMessage) -> None:
        """
        Evict the user's entry and install the queued one.

        A queued entry is dropped when invalidate() ran after it was published:
        a synchronous transition has changed the plan since it was built.
        """
        entry = message.fresh_entry
        with self._lock:
            self._entries.pop(message.user_id, None)
            if entry is None:
                return
            stale = self._generations.get(message.user_id, 0) != message.generation
            if not stale:
                # Restamp so queue latency does not eat into the entry's lifetime
                now = self._clock()
                ttl = entry.expires_at - entry.cached_at
                self._entries[message.user_id] = replace(entry, cached_at=now, expires_at=now + ttl)
        if stale:
            logger.debug(f"Queued profile entry superseded: user_id={message.user_id}")

    def drain(self) -> int:
        """Process every queued message on the calling thread. Returns how many were handled."""
        handled = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                if message is not _STOP:
                    self._handle(message)
                    handled += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while True:
            message = self._queue.get()
            try:
                if message is _STOP:
                    return
                self._handle(message)
            except Exception:
                logger.exception(f"Profile cache invalidation failed: user_id={getattr(message, 'user_id', None)}")
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="profile-cache-invalidator", daemon=True)
        self._worker.start()
        logger.info("Profile cache invalidation worker started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        logger.info("Profile cache invalidation worker stopped")
