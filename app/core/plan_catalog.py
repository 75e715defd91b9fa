"""
Plan catalog.

Single source of truth for the five subscription plans: their tier order,
monthly question quota, allowed question and document types, upload size
limit, and the Stripe product/price ids that identify them.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from app.core import config

STARTER = "starter"
BASIC = "basic"
ESSENTIALS = "essentials"
PLUS = "plus"
ADVANCED = "advanced"

FREE_PLAN_ID = STARTER

BILLING_PERIODS: Tuple[str, ...] = ("monthly", "annual")

QUESTION_TYPES: Tuple[str, ...] = (
    "multiple_choice",
    "true_false",
    "open",
    "sum",
    "fill_in_the_blank",
    "matching_columns",
    "problem_solving",
    "essay",
    "project_based",
    "gamified",
    "summative",
)

DOCUMENT_TYPES: Tuple[str, ...] = ("txt", "docx", "pdf", "pptx", "link", "text")


@dataclass(frozen=True)
class Plan:
    """Immutable description of a subscription plan."""
    id: str
    display_name: str
    tier_rank: int
    monthly_question_limit: int
    allowed_question_types: FrozenSet[str]
    allowed_document_types: FrozenSet[str]
    max_document_size_mb: int
    stripe_product_id: Optional[str] = None
    stripe_price_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def is_free(self) -> bool:
        return self.id == FREE_PLAN_ID

    @property
    def allows_links(self) -> bool:
        return "link" in self.allowed_document_types

    @property
    def max_document_size_bytes(self) -> int:
        return self.max_document_size_mb * 1024 * 1024

    def price_id_for(self, billing_period: str) -> Optional[str]:
        return self.stripe_price_ids.get(billing_period)


class PlanCatalog:
    """
    Ordered, validated collection of plans.

    Raises ValueError at construction if tier ranks collide or a Stripe
    product/price id maps to more than one plan.
    """

    def __init__(self, plans: Iterable[Plan]):
        ordered = sorted(plans, key=lambda p: p.tier_rank)
        if not ordered:
            raise ValueError("Plan catalog cannot be empty")

        self._by_id: Dict[str, Plan] = {}
        self._by_product: Dict[str, Plan] = {}
        self._by_price: Dict[str, Plan] = {}
        ranks = set()

        for plan in ordered:
            if plan.id in self._by_id:
                raise ValueError(f"Duplicate plan id: {plan.id}")
            if plan.tier_rank in ranks:
                raise ValueError(f"Duplicate tier rank {plan.tier_rank} (plan {plan.id})")
            if plan.monthly_question_limit < 0:
                raise ValueError(f"Negative question limit for plan {plan.id}")
            unknown = plan.allowed_question_types - set(QUESTION_TYPES)
            if unknown:
                raise ValueError(f"Unknown question types for plan {plan.id}: {sorted(unknown)}")
            ranks.add(plan.tier_rank)
            self._by_id[plan.id] = plan

            if plan.stripe_product_id:
                if plan.stripe_product_id in self._by_product:
                    raise ValueError(
                        f"Stripe product {plan.stripe_product_id} mapped to both "
                        f"{self._by_product[plan.stripe_product_id].id} and {plan.id}"
                    )
                self._by_product[plan.stripe_product_id] = plan

            for price_id in plan.stripe_price_ids.values():
                if price_id in self._by_price:
                    raise ValueError(
                        f"Stripe price {price_id} mapped to both "
                        f"{self._by_price[price_id].id} and {plan.id}"
                    )
                self._by_price[price_id] = plan

        self._ordered: List[Plan] = ordered

    def __iter__(self):
        return iter(self._ordered)

    def __len__(self) -> int:
        return len(self._ordered)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._by_id

    @property
    def free_plan(self) -> Plan:
        return self._ordered[0]

    def get(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._by_id.get(plan_id.lower())

    def require(self, plan_id: Optional[str]) -> Plan:
        """Like get() but raises KeyError for unknown plans."""
        plan = self.get(plan_id)
        if plan is None:
            raise KeyError(f"Unknown plan: {plan_id}")
        return plan

    def resolve(self, plan_id: Optional[str]) -> Plan:
        """Plan for plan_id, falling back to the free plan."""
        return self.get(plan_id) or self.free_plan

    def by_price_id(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def by_product_id(self, product_id: Optional[str]) -> Optional[Plan]:
        if not product_id:
            return None
        return self._by_product.get(product_id)

    def for_subscription(self, price_id: Optional[str], product_id: Optional[str]) -> Optional[Plan]:
        """Identify the plan behind a subscription item (price first, then product)."""
        return self.by_price_id(price_id) or self.by_product_id(product_id)

    def compare(self, a: str, b: str) -> int:
        """Negative if a ranks below b, zero if equal, positive if above."""
        return self.require(a).tier_rank - self.require(b).tier_rank

    def cheapest_with(self, predicate) -> Optional[Plan]:
        """Lowest-ranked plan satisfying predicate(plan)."""
        for plan in self._ordered:
            if predicate(plan):
                return plan
        return None


_BASE_TYPES = frozenset({"multiple_choice"})
_BASIC_TYPES = _BASE_TYPES | {"true_false"}
_ESSENTIALS_TYPES = _BASIC_TYPES | {"open"}
_PLUS_TYPES = _ESSENTIALS_TYPES | {"fill_in_the_blank"}

_BASIC_DOCS = frozenset({"txt", "docx", "text"})
_EXTENDED_DOCS = _BASIC_DOCS | {"pdf", "link"}


def _prices(monthly: Optional[str], annual: Optional[str]) -> Dict[str, str]:
    prices = {}
    if monthly:
        prices["monthly"] = monthly
    if annual:
        prices["annual"] = annual
    return prices


def default_plans() -> List[Plan]:
    """Plans as configured through STRIPE_PRODUCT_ID_* / STRIPE_PRICE_ID_* env vars."""
    return [
        Plan(
            id=STARTER,
            display_name="Starter",
            tier_rank=0,
            monthly_question_limit=25,
            allowed_question_types=_BASE_TYPES,
            allowed_document_types=_BASIC_DOCS,
            max_document_size_mb=10,
        ),
        Plan(
            id=BASIC,
            display_name="Basic",
            tier_rank=1,
            monthly_question_limit=50,
            allowed_question_types=_BASIC_TYPES,
            allowed_document_types=_BASIC_DOCS,
            max_document_size_mb=20,
            stripe_product_id=config.STRIPE_PRODUCT_ID_BASIC,
            stripe_price_ids=_prices(config.STRIPE_PRICE_ID_BASIC_MONTHLY,
                                     config.STRIPE_PRICE_ID_BASIC_ANNUAL),
        ),
        Plan(
            id=ESSENTIALS,
            display_name="Essentials",
            tier_rank=2,
            monthly_question_limit=75,
            allowed_question_types=_ESSENTIALS_TYPES,
            allowed_document_types=_EXTENDED_DOCS,
            max_document_size_mb=30,
            stripe_product_id=config.STRIPE_PRODUCT_ID_ESSENTIALS,
            stripe_price_ids=_prices(config.STRIPE_PRICE_ID_ESSENTIALS_MONTHLY,
                                     config.STRIPE_PRICE_ID_ESSENTIALS_ANNUAL),
        ),
        Plan(
            id=PLUS,
            display_name="Plus",
            tier_rank=3,
            monthly_question_limit=100,
            allowed_question_types=_PLUS_TYPES,
            allowed_document_types=_EXTENDED_DOCS,
            max_document_size_mb=40,
            stripe_product_id=config.STRIPE_PRODUCT_ID_PLUS,
            stripe_price_ids=_prices(config.STRIPE_PRICE_ID_PLUS_MONTHLY,
                                     config.STRIPE_PRICE_ID_PLUS_ANNUAL),
        ),
        Plan(
            id=ADVANCED,
            display_name="Advanced",
            tier_rank=4,
            monthly_question_limit=150,
            allowed_question_types=frozenset(QUESTION_TYPES),
            allowed_document_types=_EXTENDED_DOCS | {"pptx"},
            max_document_size_mb=100,
            stripe_product_id=config.STRIPE_PRODUCT_ID_ADVANCED,
            stripe_price_ids=_prices(config.STRIPE_PRICE_ID_ADVANCED_MONTHLY,
                                     config.STRIPE_PRICE_ID_ADVANCED_ANNUAL),
        ),
    ]


_catalog: Optional[PlanCatalog] = None


def get_catalog() -> PlanCatalog:
    """Process-wide catalog, built from the environment on first use."""
    global _catalog
    if _catalog is None:
        _catalog = PlanCatalog(default_plans())
    return _catalog
