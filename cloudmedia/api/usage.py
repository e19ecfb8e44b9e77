from fastapi import APIRouter, Depends

from cloudmedia.core.auth import get_current_user_id
from cloudmedia.features.usage.service import get_usage_summary


router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("")
def get_usage_endpoint(user_id: str = Depends(get_current_user_id)):
    """Current-month usage counts and remaining credits."""
    return get_usage_summary(user_id)
