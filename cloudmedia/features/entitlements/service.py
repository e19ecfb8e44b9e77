"""
cloudmedia/features/entitlements/service.py

Entitlement evaluator.

Pure functions: plan + current count -> allow/deny. Nothing here reads or
writes storage; gatekeepers count inside their locked transaction and ask.
"""

from dataclasses import dataclass
from typing import Optional, Union

from cloudmedia.core.errors import ConfigurationError, InvalidPlanError, LimitReachedError
from cloudmedia.core.logging import log_event
from cloudmedia.features.plans.catalog import DEFAULT_CATALOG, PlanCatalog, ResourceKind


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    limit: int
    current: int


def _resolve_kind(resource_kind: Union[ResourceKind, str]) -> ResourceKind:
    try:
        return ResourceKind(resource_kind)
    except ValueError:
        raise ConfigurationError(f"Unknown resource kind: {resource_kind!r}")


def check_limit(
    resource_kind: Union[ResourceKind, str],
    organization_plan: str,
    current_count: int,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
) -> LimitCheck:
    """
    Decide whether one more resource of `resource_kind` may be created.

    allowed is true iff current_count is strictly below the plan's limit.
    An unknown plan or resource kind is a configuration fault, not a denial.
    """
    kind = _resolve_kind(resource_kind)
    try:
        plan = catalog.get_plan(organization_plan)
    except InvalidPlanError:
        raise ConfigurationError(f"Organization has unknown plan: {organization_plan!r}")

    limit = plan.limit_for(kind)
    if limit is None:
        raise ConfigurationError(f"Plan {plan.plan_id!r} defines no limit for {kind.value}")

    return LimitCheck(allowed=current_count < limit, limit=limit, current=current_count)


def enforce_limit(
    resource_kind: Union[ResourceKind, str],
    organization_plan: str,
    current_count: int,
    *,
    catalog: PlanCatalog = DEFAULT_CATALOG,
    organization_id: Optional[str] = None,
) -> LimitCheck:
    """check_limit, raising LimitReachedError on denial."""
    result = check_limit(resource_kind, organization_plan, current_count, catalog=catalog)
    if not result.allowed:
        kind = _resolve_kind(resource_kind)
        log_event(
            "info",
            "entitlement.denied",
            organization_id=organization_id,
            error_code="limit_reached",
            extra={
                "resource": kind.value,
                "plan": organization_plan,
                "limit": result.limit,
                "current": result.current,
            },
        )
        raise LimitReachedError(kind.value, result.limit, result.current, plan=organization_plan)
    return result
