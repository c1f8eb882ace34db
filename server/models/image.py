"""Image request models.

An ImageRequest identifies one original (dir + file + ext) and the version the
caller wants of it. Everything derived from it (content hash, keys, blob paths)
is a pure function of these fields.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Mapping, Optional

ALLOWED_FORMATS = ("jpg", "jpeg", "png", "gif")

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
}

DEFAULT_MIME_TYPE = "application/octet-stream"


def parse_format(ext: str) -> str:
    """Map a file extension to its mime type."""
    return MIME_TYPES.get(ext.lower(), DEFAULT_MIME_TYPE)


@dataclass(frozen=True)
class TransformOptions:
    """Requested manipulation. Unset fields are None and omitted from keys."""
    action: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    crop_x: Optional[int] = None
    crop_y: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TransformOptions":
        """Build options from a loose mapping (camelCase crop keys accepted)."""
        def _int(name: str, alias: Optional[str] = None) -> Optional[int]:
            value = data.get(name, data.get(alias) if alias else None)
            return None if value is None else int(value)

        action = data.get("action")
        return cls(
            action=str(action) if action else None,
            width=_int("width"),
            height=_int("height"),
            crop_x=_int("crop_x", "cropX"),
            crop_y=_int("crop_y", "cropY"),
        )

    @property
    def has_action(self) -> bool:
        return bool(self.action)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class ImageRequest:
    """A parsed request for one version of one original image."""
    dir: str
    file: str
    ext: str
    options: TransformOptions = field(default_factory=TransformOptions)
    json: bool = False
    flush: bool = False

    @classmethod
    def from_path(cls, path: str, options: Optional[Mapping[str, Any]] = None,
                  json: bool = False, flush: bool = False) -> "ImageRequest":
        """Split ``dir/sub/file.ext`` into its parts."""
        path = path.strip("/")
        directory, _, filename = path.rpartition("/")
        file, dot, ext = filename.rpartition(".")
        if not dot:
            file, ext = filename, ""
        return cls(
            dir=directory,
            file=file,
            ext=ext,
            options=TransformOptions.from_mapping(options or {}),
            json=json,
            flush=flush,
        )

    @property
    def mime(self) -> str:
        return parse_format(self.ext)

    def valid_extension(self) -> bool:
        return self.ext.lower() in ALLOWED_FORMATS


@dataclass
class ImageInfo:
    """Identify output for an original image."""
    format: Optional[str]
    width: int
    height: int
    mode: Optional[str] = None
    frames: int = 1

    @property
    def animated_gif(self) -> bool:
        if not self.format:
            return False
        return self.format.lower() == "gif" and self.frames > 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["size"] = {"width": self.width, "height": self.height}
        data["animated"] = self.animated_gif
        return data


@dataclass
class OriginalParams:
    """Cached identify result stored under ``<base>:orig``."""
    width: int
    height: int
    animated_gif: bool = False

    def to_record(self) -> Dict[str, Any]:
        return {"d": {"width": self.width, "height": self.height}, "a": self.animated_gif}

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "OriginalParams":
        dims = data.get("d") or {}
        return cls(
            width=int(dims.get("width", 0)),
            height=int(dims.get("height", 0)),
            animated_gif=bool(data.get("a", False)),
        )


@dataclass
class TransformResult:
    """Local temporary file produced by the transformer."""
    path: str
    size: int


@dataclass
class UploadRequest:
    source: str
    destination: str
    size: int
    mime_type: str


@dataclass
class VersionResult:
    """Outcome of a version request."""
    image: ImageRequest
    url: str
    path: str
    mime: str
    cached: bool
