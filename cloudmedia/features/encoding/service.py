"""
Helpers shared by the gatekeepers that call the encode service.
"""
from typing import Callable

from cloudmedia.core.errors import ExternalServiceError
from cloudmedia.core.logging import log_event
from cloudmedia.features.encoding.provider import EncodeError, EncodeProvider, EncodeResult


def run_encode(call: Callable[[], EncodeResult], *, action: str, organization_id: str) -> EncodeResult:
    """Run one encode call, surfacing failures as ExternalServiceError."""
    try:
        return call()
    except EncodeError as e:
        log_event(
            "error",
            "encode.failed",
            organization_id=organization_id,
            error_code="external_service_failure",
            extra={"action": action, "reason": e, "transient": e.transient},
        )
        raise ExternalServiceError("cloudinary", f"Cloudinary {action} failed: {e}", retryable=e.transient)


def discard_asset(encoder: EncodeProvider, public_id: str, resource_type: str, organization_id: str) -> None:
    """Best-effort removal of an asset whose database write did not happen."""
    try:
        encoder.destroy(public_id, resource_type=resource_type)
    except EncodeError as e:
        log_event(
            "error",
            "encode.orphan_asset",
            organization_id=organization_id,
            error_code="external_service_failure",
            extra={"public_id": public_id, "resource_type": resource_type, "reason": e},
        )
    else:
        log_event(
            "warning",
            "encode.asset_discarded",
            organization_id=organization_id,
            extra={"public_id": public_id, "resource_type": resource_type},
        )
