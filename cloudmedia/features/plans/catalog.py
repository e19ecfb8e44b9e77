"""
cloudmedia/features/plans/catalog.py

Plan catalog.

Static, versioned table of plan tiers: price, per-period credits, storage,
per-resource limits and the upload quality each tier gets. A single
PlanCatalog instance is shared by every gatekeeper; tests may inject their own.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from cloudmedia.core.errors import InvalidPlanError


class ResourceKind(str, Enum):
    """Countable resources whose creation is capped per plan."""
    BRAND_KITS = "brand_kits"
    TRANSFORMS_PER_VIDEO = "transforms_per_video"
    ORG_USERS = "org_users"


class PlanDefinition(BaseModel):
    """One subscription tier. Immutable."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price: int  # monthly, in cents
    video_credits: int
    image_credits: int
    storage_limit: int  # GB
    features: Tuple[str, ...] = ()
    limits: Mapping[ResourceKind, int]
    # Upload encoding settings
    max_height: int
    quality: str

    def limit_for(self, kind: ResourceKind) -> Optional[int]:
        return self.limits.get(kind)

    def to_public_dict(self) -> dict:
        return {
            "id": self.plan_id,
            "name": self.name,
            "price": self.price,
            "video_credits": self.video_credits,
            "image_credits": self.image_credits,
            "storage_limit": self.storage_limit,
            "features": list(self.features),
            "limits": {kind.value: value for kind, value in self.limits.items()},
        }


FREE_PLAN_ID = "free"


class PlanCatalog:
    """Lookup of plan id -> PlanDefinition."""

    def __init__(self, plans: Iterable[PlanDefinition], version: str):
        self.version = version
        self._plans: Mapping[str, PlanDefinition] = MappingProxyType(
            {plan.plan_id: plan for plan in plans}
        )
        if FREE_PLAN_ID not in self._plans:
            raise ValueError("Plan catalog must define a free plan")

    def get_plan(self, plan_id: str) -> PlanDefinition:
        """Return the plan or raise InvalidPlanError. Never falls back to a default."""
        plan = self._plans.get(plan_id) if isinstance(plan_id, str) else None
        if plan is None:
            raise InvalidPlanError(plan_id)
        return plan

    def has_plan(self, plan_id: str) -> bool:
        return plan_id in self._plans

    @property
    def free_plan(self) -> PlanDefinition:
        return self._plans[FREE_PLAN_ID]

    def plan_ids(self) -> List[str]:
        return list(self._plans.keys())

    def plans(self) -> List[PlanDefinition]:
        return list(self._plans.values())


def _limits(brand_kits: int, transforms_per_video: int, org_users: int) -> Dict[ResourceKind, int]:
    return {
        ResourceKind.BRAND_KITS: brand_kits,
        ResourceKind.TRANSFORMS_PER_VIDEO: transforms_per_video,
        ResourceKind.ORG_USERS: org_users,
    }


DEFAULT_PLANS = (
    PlanDefinition(
        plan_id="free",
        name="Free",
        price=0,
        video_credits=5,
        image_credits=20,
        storage_limit=1,
        features=("Basic video compression", "Social media image formats", "1 user"),
        limits=_limits(brand_kits=1, transforms_per_video=1, org_users=1),
        max_height=720,
        quality="auto",
    ),
    PlanDefinition(
        plan_id="creator",
        name="Creator",
        price=1999,
        video_credits=20,
        image_credits=100,
        storage_limit=10,
        features=("Advanced compression", "All social platforms", "Brand kit", "Analytics"),
        limits=_limits(brand_kits=1, transforms_per_video=3, org_users=1),
        max_height=1080,
        quality="80",
    ),
    PlanDefinition(
        plan_id="business",
        name="Business",
        price=4999,
        video_credits=100,
        image_credits=500,
        storage_limit=50,
        features=("Team collaboration", "Multiple brand kits", "Advanced analytics", "Priority processing"),
        limits=_limits(brand_kits=3, transforms_per_video=10, org_users=5),
        max_height=1440,
        quality="90",
    ),
    PlanDefinition(
        plan_id="agency",
        name="Agency",
        price=12999,
        video_credits=500,
        image_credits=2000,
        storage_limit=250,
        features=("Up to 15 users", "White-label exports", "API access", "Dedicated support"),
        limits=_limits(brand_kits=10, transforms_per_video=50, org_users=15),
        max_height=2160,
        quality="100",
    ),
)

CATALOG_VERSION = "2024-06"

DEFAULT_CATALOG = PlanCatalog(DEFAULT_PLANS, version=CATALOG_VERSION)


def get_catalog() -> PlanCatalog:
    """FastAPI dependency returning the shared catalog."""
    return DEFAULT_CATALOG
