"""
Quota ledger for question generation.

Counts generated questions per user per billing-anchored monthly cycle.
Checks are read-only; commits are atomic SQL increments so concurrent
generations for the same user never lose updates.
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import insert as generic_insert
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import ValidationError
from app.core.plan_catalog import Plan, PlanCatalog
from app.db.models.quota import QuotaCycle, QuotaSubjectCount
from app.db.models.user import User
from app.services.subscription_mapping import ENTITLED_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "general"
HISTORY_MONTHS = 6
CYCLE_KEY_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class CycleWindow:
    cycle_id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    remaining: int
    limit: int
    used: int
    requested: int
    cycle_id: str
    plan_id: str

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "used": self.used,
            "requested": self.requested,
            "cycle_id": self.cycle_id,
            "plan": self.plan_id,
        }


@dataclass
class UsageSummary:
    plan_id: str
    limit: int
    used: int
    remaining: int
    cycle_id: str
    period_start: datetime
    period_end: datetime
    per_category: Dict[str, int] = field(default_factory=dict)


@dataclass
class CycleUsage:
    cycle_id: str
    period_start: datetime
    total_questions: int
    plan_limit_snapshot: int
    per_category: Dict[str, int] = field(default_factory=dict)


def add_months(anchor: datetime, months: int) -> datetime:
    """anchor shifted by whole months, clamping the day to the target month's length."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


def cycle_key(start: datetime) -> str:
    """
    Key of the window starting at start.

    The full start instant, so windows from different anchors (a paid period
    and the signup-anchored window that follows it) never share a counter.
    """
    return as_utc(start).strftime(CYCLE_KEY_FORMAT)


def cycle_window(anchor: datetime, now: datetime) -> CycleWindow:
    """
    Monthly window containing now, anchored on anchor's day-of-month and time.

    Windows are always computed from the anchor itself (never chained), so
    a 31st anchor yields ..., Feb 28/29, Mar 31, Apr 30, ...
    """
    anchor = as_utc(anchor)
    now = as_utc(now)
    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = add_months(anchor, months)
    if start > now:
        months -= 1
        start = add_months(anchor, months)
    end = add_months(anchor, months + 1)
    return CycleWindow(cycle_id=cycle_key(start), start=start, end=end)


def cycle_anchor(user: User, now: Optional[datetime] = None) -> datetime:
    """Subscription period start for entitled users, otherwise account creation."""
    if user.plan_status in ENTITLED_STATUSES and user.current_period_start is not None:
        return as_utc(user.current_period_start)
    if user.created_at is not None:
        return as_utc(user.created_at)
    return as_utc(now) or utcnow()


def _insert_ignore(db: Session, model, values: dict, index_elements: List[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING for the current dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        db.execute(pg_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements))
    elif dialect == "sqlite":
        db.execute(sqlite_insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements))
    else:
        try:
            with db.begin_nested():
                db.execute(generic_insert(model).values(**values))
        except IntegrityError:
            pass  # row already exists


class QuotaLedger:
    """Per-cycle question counters with check-then-commit semantics."""

    def __init__(self, catalog: PlanCatalog):
        self.catalog = catalog

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def cycle_for(self, user: User, now: Optional[datetime] = None) -> CycleWindow:
        now = as_utc(now) or utcnow()
        return cycle_window(cycle_anchor(user, now), now)

    def _load_user(self, db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise ValidationError(f"Unknown user: {user_id}")
        return user

    def _get_cycle(self, db: Session, user_id: int, cycle_id: str) -> Optional[QuotaCycle]:
        return (
            db.query(QuotaCycle)
            .filter(QuotaCycle.user_id == user_id, QuotaCycle.cycle_id == cycle_id)
            .first()
        )

    @staticmethod
    def effective_limit(cycle: Optional[QuotaCycle], plan: Plan) -> int:
        """A downgrade never shrinks a cycle already under way; an upgrade raises it at once."""
        if cycle is None:
            return plan.monthly_question_limit
        return max(cycle.plan_limit_snapshot, plan.monthly_question_limit)

    @staticmethod
    def _validate_count(value: int, name: str) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"{name} must be a positive integer", detail={name: value})

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def check_and_reserve(
        self,
        db: Session,
        user_id: int,
        subject: Optional[str],
        requested_count: int,
        now: Optional[datetime] = None,
        plan: Optional[Plan] = None,
    ) -> QuotaCheck:
        """
        Would requested_count more questions fit in the current cycle?

        Read-only: nothing is recorded until commit().
        """
        self._validate_count(requested_count, "requested_count")
        user = self._load_user(db, user_id)
        plan = plan or self.catalog.resolve(user.plan_id)
        window = self.cycle_for(user, now)

        cycle = self._get_cycle(db, user_id, window.cycle_id)
        used = cycle.total_questions if cycle else 0
        limit = self.effective_limit(cycle, plan)
        remaining = max(0, limit - used)
        allowed = used + requested_count <= limit

        if not allowed:
            logger.info(
                f"Quota check denied: user_id={user_id}, plan={plan.id}, cycle={window.cycle_id}, "
                f"used={used}, limit={limit}, requested={requested_count}, subject={subject}"
            )

        return QuotaCheck(
            allowed=allowed,
            remaining=remaining,
            limit=limit,
            used=used,
            requested=requested_count,
            cycle_id=window.cycle_id,
            plan_id=plan.id,
        )

    def commit(
        self,
        db: Session,
        user_id: int,
        subject: Optional[str],
        count: int,
        now: Optional[datetime] = None,
        plan: Optional[Plan] = None,
    ) -> int:
        """
        Record count generated questions. Returns the cycle total afterwards.

        Uses UPDATE ... SET total = total + :n so concurrent commits add up.
        """
        self._validate_count(count, "count")
        user = self._load_user(db, user_id)
        plan = plan or self.catalog.resolve(user.plan_id)
        window = self.cycle_for(user, now)
        subject = (subject or DEFAULT_SUBJECT).strip().lower() or DEFAULT_SUBJECT

        try:
            _insert_ignore(
                db,
                QuotaCycle,
                {
                    "user_id": user_id,
                    "cycle_id": window.cycle_id,
                    "period_start": window.start,
                    "total_questions": 0,
                    "plan_limit_snapshot": plan.monthly_question_limit,
                },
                ["user_id", "cycle_id"],
            )
            db.execute(
                update(QuotaCycle)
                .where(QuotaCycle.user_id == user_id, QuotaCycle.cycle_id == window.cycle_id)
                .values(total_questions=QuotaCycle.total_questions + count, updated_at=utcnow())
            )
            _insert_ignore(
                db,
                QuotaSubjectCount,
                {"user_id": user_id, "cycle_id": window.cycle_id, "subject": subject, "count": 0},
                ["user_id", "cycle_id", "subject"],
            )
            db.execute(
                update(QuotaSubjectCount)
                .where(
                    QuotaSubjectCount.user_id == user_id,
                    QuotaSubjectCount.cycle_id == window.cycle_id,
                    QuotaSubjectCount.subject == subject,
                )
                .values(count=QuotaSubjectCount.count + count)
            )
            total = (
                db.query(QuotaCycle.total_questions)
                .filter(QuotaCycle.user_id == user_id, QuotaCycle.cycle_id == window.cycle_id)
                .scalar()
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Quota commit failed: user_id={user_id}, cycle={window.cycle_id}, count={count}")
            raise

        logger.info(
            f"Usage committed: user_id={user_id}, plan={plan.id}, cycle={window.cycle_id}, "
            f"subject={subject}, count={count}, total={total}"
        )
        return int(total)

    def subject_counts(self, db: Session, user_id: int, cycle_id: str) -> Dict[str, int]:
        rows = (
            db.query(QuotaSubjectCount.subject, QuotaSubjectCount.count)
            .filter(QuotaSubjectCount.user_id == user_id, QuotaSubjectCount.cycle_id == cycle_id)
            .all()
        )
        return {subject: int(count) for subject, count in rows}

    def usage_summary(
        self,
        db: Session,
        user: User,
        plan: Optional[Plan] = None,
        category: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UsageSummary:
        """Current cycle usage for display, optionally narrowed to one category."""
        plan = plan or self.catalog.resolve(user.plan_id)
        window = self.cycle_for(user, now)
        cycle = self._get_cycle(db, user.id, window.cycle_id)
        used = cycle.total_questions if cycle else 0
        limit = self.effective_limit(cycle, plan)

        per_category = self.subject_counts(db, user.id, window.cycle_id)
        if category:
            key = category.strip().lower()
            per_category = {key: per_category.get(key, 0)}

        return UsageSummary(
            plan_id=plan.id,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            cycle_id=window.cycle_id,
            period_start=window.start,
            period_end=window.end,
            per_category=per_category,
        )

    def history(self, db: Session, user_id: int, months: int = HISTORY_MONTHS) -> List[CycleUsage]:
        """Most recent cycles first."""
        if months <= 0:
            raise ValidationError("months must be positive", detail={"months": months})
        cycles = (
            db.query(QuotaCycle)
            .filter(QuotaCycle.user_id == user_id)
            .order_by(QuotaCycle.period_start.desc())
            .limit(months)
            .all()
        )
        return [
            CycleUsage(
                cycle_id=cycle.cycle_id,
                period_start=as_utc(cycle.period_start),
                total_questions=cycle.total_questions,
                plan_limit_snapshot=cycle.plan_limit_snapshot,
                per_category=self.subject_counts(db, user_id, cycle.cycle_id),
            )
            for cycle in cycles
        ]
