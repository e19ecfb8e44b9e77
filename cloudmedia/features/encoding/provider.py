"""
Encode provider protocol and transform specs.

Defines the interface for the media encode service (Cloudinary) and turns a
stored transform (type + settings) into the declarative TransformSpec the
provider executes. Validation of user-supplied settings happens here, before
anything is sent out.
"""
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Mapping, Optional, Protocol, Tuple, Union

from cloudmedia.core.errors import ValidationError
from cloudmedia.models.brand_kit import BrandKit
from cloudmedia.models.video import TransformType


SOCIAL_ASPECT_RATIOS = {
    "instagram": "1:1",
    "tiktok": "9:16",
    "youtube": "16:9",
    "facebook": "16:9",
    "twitter": "16:9",
    "linkedin": "1.91:1",
}

SOCIAL_WIDTH = 1080

GRAVITIES = frozenset({
    "north_west", "north", "north_east",
    "west", "center", "east",
    "south_west", "south", "south_east",
})

CROP_MODES = frozenset({"fill", "fit", "limit", "scale", "crop", "pad", "lfill", "thumb"})

WATERMARK_DEFAULTS = {
    "position": "south_east",
    "opacity": 70,
    "logo_width": 100,
    "offset": 20,
    "font_family": "Arial",
    "font_size": 30,
    "text_color": "white",
}

MAX_DIMENSION = 8192


@dataclass(frozen=True)
class EncodeResult:
    public_id: str
    url: str
    bytes: Optional[int] = None
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None


@dataclass(frozen=True)
class TransformSpec:
    """A provider-ready transformation: ordered steps plus optional trim offsets."""
    transform_type: TransformType
    steps: Tuple[Dict[str, Any], ...] = ()
    start_offset: Optional[float] = None
    end_offset: Optional[float] = None
    resource_type: str = "video"
    extra: Dict[str, Any] = field(default_factory=dict)


class EncodeError(Exception):
    """Encode service failure. transient=True when a retry may succeed."""

    def __init__(self, message: str, *, transient: bool):
        super().__init__(message)
        self.transient = transient


UploadSource = Union[bytes, BinaryIO, str]


class EncodeProvider(Protocol):
    """
    Protocol for the encode collaborator.

    Every call is bounded by a timeout and raises EncodeError on failure.
    """

    def upload_video(self, source: UploadSource, *, folder: str, quality: str, max_height: int) -> EncodeResult:
        ...

    def upload_image(self, source: UploadSource, *, folder: str) -> EncodeResult:
        ...

    def apply_transform(self, source_public_id: str, spec: TransformSpec) -> EncodeResult:
        ...

    def destroy(self, public_id: str, *, resource_type: str = "video") -> None:
        ...


def _number(settings: Mapping[str, Any], key: str, *, minimum: float = 0, maximum: Optional[float] = None):
    value = settings.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number")
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(f"{key} is out of range")
    return value


def _gravity(settings: Mapping[str, Any]) -> str:
    position = settings.get("position") or WATERMARK_DEFAULTS["position"]
    if position not in GRAVITIES:
        raise ValidationError(f"Unknown position: {position!r}")
    return position


def _logo_overlay(public_id: str, settings: Mapping[str, Any]) -> Dict[str, Any]:
    opacity = _number(settings, "opacity", minimum=0, maximum=100)
    width = _number(settings, "logo_width", minimum=1, maximum=MAX_DIMENSION)
    return {
        "overlay": public_id.replace("/", ":"),
        "gravity": _gravity(settings),
        "width": int(width) if width is not None else WATERMARK_DEFAULTS["logo_width"],
        "opacity": int(opacity) if opacity is not None else WATERMARK_DEFAULTS["opacity"],
        "x": WATERMARK_DEFAULTS["offset"],
        "y": WATERMARK_DEFAULTS["offset"],
    }


def build_transform_spec(
    transform_type: Union[TransformType, str],
    settings: Optional[Mapping[str, Any]] = None,
    *,
    brand_kit: Optional[BrandKit] = None,
) -> TransformSpec:
    """
    Validate settings for one transform type and build its spec.

    Raises ValidationError for unknown types or unusable settings.
    """
    try:
        kind = TransformType(transform_type)
    except ValueError:
        raise ValidationError(f"Unknown transform type: {transform_type!r}")
    settings = dict(settings or {})

    if kind == TransformType.RESIZE:
        width = _number(settings, "width", minimum=1, maximum=MAX_DIMENSION)
        height = _number(settings, "height", minimum=1, maximum=MAX_DIMENSION)
        if width is None or height is None:
            raise ValidationError("Resize requires width and height")
        crop = settings.get("crop") or "fill"
        if crop not in CROP_MODES:
            raise ValidationError(f"Unknown crop mode: {crop!r}")
        return TransformSpec(kind, steps=({"width": int(width), "height": int(height), "crop": crop},))

    if kind == TransformType.SOCIAL:
        platform = settings.get("platform") or "instagram"
        aspect_ratio = SOCIAL_ASPECT_RATIOS.get(platform)
        if aspect_ratio is None:
            raise ValidationError(f"Unknown social platform: {platform!r}")
        return TransformSpec(
            kind,
            steps=({"aspect_ratio": aspect_ratio, "width": SOCIAL_WIDTH, "crop": "fill"},),
            extra={"platform": platform},
        )

    if kind == TransformType.TRIM:
        start = _number(settings, "start_offset")
        end = _number(settings, "end_offset")
        if start is None and end is None:
            raise ValidationError("Trim requires start_offset or end_offset")
        if start is not None and end is not None and end <= start:
            raise ValidationError("end_offset must be after start_offset")
        return TransformSpec(kind, start_offset=start if start is not None else 0, end_offset=end)

    if kind == TransformType.WATERMARK:
        text = settings.get("text")
        logo_public_id = settings.get("logo_public_id")
        if text:
            font_size = _number(settings, "font_size", minimum=1, maximum=500)
            step = {
                "overlay": {
                    "font_family": settings.get("font_family") or WATERMARK_DEFAULTS["font_family"],
                    "font_size": int(font_size) if font_size is not None else WATERMARK_DEFAULTS["font_size"],
                    "text": str(text),
                },
                "color": settings.get("text_color") or WATERMARK_DEFAULTS["text_color"],
                "gravity": _gravity(settings),
                "x": WATERMARK_DEFAULTS["offset"],
                "y": WATERMARK_DEFAULTS["offset"],
            }
            return TransformSpec(kind, steps=(step,))
        if logo_public_id:
            return TransformSpec(kind, steps=(_logo_overlay(str(logo_public_id), settings),))
        raise ValidationError("Watermark requires text or logo_public_id")

    # brandKit
    if brand_kit is None:
        raise ValidationError("Brand kit transform requires brand_kit_id")
    if not brand_kit.logo_public_id:
        raise ValidationError("Brand kit has no logo")
    return TransformSpec(kind, steps=(_logo_overlay(brand_kit.logo_public_id, settings),))
