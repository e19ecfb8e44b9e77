"""
Cloudinary encode provider.

Implements EncodeProvider using the cloudinary SDK. Every call passes an
explicit timeout; SDK errors are mapped onto EncodeError with a transient flag.
"""
from typing import Any, Callable, Dict, Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

from cloudmedia.core.config import settings
from cloudmedia.core.errors import ConfigurationError
from cloudmedia.features.encoding.provider import EncodeError, EncodeResult, TransformSpec, UploadSource


# Failures a retry will not fix
_PERMANENT_ERRORS = (
    cloudinary.exceptions.BadRequest,
    cloudinary.exceptions.NotFound,
    cloudinary.exceptions.NotAllowed,
    cloudinary.exceptions.AuthorizationRequired,
    cloudinary.exceptions.AlreadyExists,
)


def _result(response: Dict[str, Any]) -> EncodeResult:
    return EncodeResult(
        public_id=response["public_id"],
        url=response.get("secure_url") or response.get("url", ""),
        bytes=response.get("bytes"),
        duration=response.get("duration"),
        width=response.get("width"),
        height=response.get("height"),
        format=response.get("format"),
    )


class CloudinaryEncoder:
    """Cloudinary implementation of EncodeProvider protocol."""

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        cloud_name = cloud_name or settings.CLOUDINARY_CLOUD_NAME
        api_key = api_key or settings.CLOUDINARY_API_KEY
        api_secret = api_secret or settings.CLOUDINARY_API_SECRET
        if not (cloud_name and api_key and api_secret):
            raise ConfigurationError("Cloudinary credentials not configured")

        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS

    def _call(self, action: str, fn: Callable[..., Dict[str, Any]], *args, **options) -> Dict[str, Any]:
        try:
            return fn(*args, timeout=self.timeout, **options)
        except _PERMANENT_ERRORS as e:
            raise EncodeError(f"Cloudinary {action} rejected: {e}", transient=False)
        except (cloudinary.exceptions.Error, OSError) as e:
            # RateLimited, GeneralError, socket errors and timeouts
            raise EncodeError(f"Cloudinary {action} failed: {e}", transient=True)

    def upload_video(self, source: UploadSource, *, folder: str, quality: str, max_height: int) -> EncodeResult:
        response = self._call(
            "video upload",
            cloudinary.uploader.upload,
            source,
            resource_type="video",
            folder=folder,
            transformation=[
                {"quality": quality, "fetch_format": "mp4", "height": max_height, "crop": "limit"},
            ],
        )
        return _result(response)

    def upload_image(self, source: UploadSource, *, folder: str) -> EncodeResult:
        response = self._call("image upload", cloudinary.uploader.upload, source, resource_type="image", folder=folder)
        return _result(response)

    def apply_transform(self, source_public_id: str, spec: TransformSpec) -> EncodeResult:
        options: Dict[str, Any] = {"resource_type": spec.resource_type, "type": "upload"}
        if spec.steps:
            options["transformation"] = list(spec.steps)
        if spec.start_offset is not None:
            options["start_offset"] = spec.start_offset
        if spec.end_offset is not None:
            options["end_offset"] = spec.end_offset
        response = self._call("transform", cloudinary.uploader.explicit, source_public_id, **options)
        return _result(response)

    def destroy(self, public_id: str, *, resource_type: str = "video") -> None:
        self._call("destroy", cloudinary.uploader.destroy, public_id, resource_type=resource_type, invalidate=True)


def get_encoder() -> CloudinaryEncoder:
    """FastAPI dependency returning the configured encoder."""
    return CloudinaryEncoder()
