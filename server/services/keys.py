"""Cache key and blob path derivation.

Key schema (must stay stable for cache compatibility):
    {ns}:{env}:{hash}                  -> version record when no action
    {ns}:{env}:{hash}{suffix}          -> version record for a transform
    {ns}:{env}:{hash}:orig             -> cached original params
    {ns}:lock:{env}:{hash}[{suffix}]   -> lock lease (expiry in ms)

where hash is md5(dir + file) and suffix is
``_a<action[0]>[_w<w>][_h<h>][_cx<x>][_cy<y>]``.
"""

import hashlib

from models.image import ImageRequest


def md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


class KeyDeriver:
    """Deterministic mapping from an ImageRequest to store keys and blob paths."""

    def __init__(self, namespace: str, environment: str, public_root: str = ""):
        self.namespace = namespace
        self.env = environment[0]
        self.public_root = public_root

    def content_hash(self, image: ImageRequest) -> str:
        return md5(f"{image.dir}{image.file}")

    def options_suffix(self, image: ImageRequest) -> str:
        """Underscore-delimited options string used in keys and version filenames."""
        if image.json or not image.options.has_action:
            return ""
        options = image.options
        suffix = f"_a{options.action[0]}"
        if options.width is not None:
            suffix += f"_w{options.width}"
        if options.height is not None:
            suffix += f"_h{options.height}"
        if options.crop_x is not None:
            suffix += f"_cx{options.crop_x}"
        if options.crop_y is not None:
            suffix += f"_cy{options.crop_y}"
        return suffix

    def base_key(self, image: ImageRequest) -> str:
        return f"{self.namespace}:{self.env}:{self.content_hash(image)}"

    def original_key(self, image: ImageRequest) -> str:
        return f"{self.base_key(image)}:orig"

    def version_key(self, image: ImageRequest) -> str:
        if not image.options.has_action:
            return self.base_key(image)
        return f"{self.base_key(image)}{self.options_suffix(image)}"

    def lock_key(self, image: ImageRequest) -> str:
        key = f"{self.namespace}:lock:{self.env}:{self.content_hash(image)}"
        if not image.options.has_action:
            return key
        return f"{key}{self.options_suffix(image)}"

    # Blob paths

    def filename(self, image: ImageRequest) -> str:
        return f"{self.content_hash(image)}{self.options_suffix(image)}.{image.ext.lower()}"

    def version_path(self, image: ImageRequest) -> str:
        return f"{self.env}/{self.filename(image)}"

    def original_path(self, image: ImageRequest) -> str:
        prefix = f"{image.dir}/" if image.dir else ""
        return f"{prefix}{image.file}.{image.ext}"

    def version_url(self, image: ImageRequest) -> str:
        return f"{self.public_root}{self.version_path(image)}"
