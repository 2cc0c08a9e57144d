from __future__ import annotations

import os
import shutil
import uuid
from io import BytesIO
from typing import Dict, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests
from PIL import Image, ImageOps

from ..errors import InvalidInput, NotFound
from ..logging import get_logger
from ..paths import expand_abs, var_dir

LOG = get_logger("image-storage")

WHITE = (255, 255, 255)
THUMBNAIL_SIZE = 150
OPTIMIZED_MAX = 600
WEBP_QUALITY = 85
RESOLUTION_SIZES = {"1x": 400, "2x": 800, "3x": 1200}
CUSTOM_SIZE = (828, 440)


def _flatten(img: Image.Image) -> Image.Image:
    """RGB copy with any transparency composited onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, WHITE)
        canvas.paste(rgba, mask=rgba.split()[-1])
        return canvas
    return img.convert("RGB")


def _fit_inside(img: Image.Image, size: int) -> Image.Image:
    copy = img.copy()
    copy.thumbnail((size, size), Image.LANCZOS)
    return copy


class ImageStorage:
    """Local file storage for flyers and product renditions under var/."""

    def __init__(
        self,
        root_dir: str,
        *,
        public_base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_dir = var_dir(root_dir)
        self.flyers_dir = os.path.join(self.base_dir, "flyers")
        self.images_dir = os.path.join(self.base_dir, "images")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.session = session or requests.Session()

    # ---- flyers ----------------------------------------------------------------
    def store_flyer(self, source_path: str) -> Tuple[str, int]:
        """Copy an uploaded flyer into storage; returns (storage reference, size)."""
        src = expand_abs(source_path)
        if not os.path.isfile(src):
            raise NotFound(f"Flyer file not found: {src}")
        target_dir = os.path.join(self.flyers_dir, uuid.uuid4().hex)
        os.makedirs(target_dir, exist_ok=True)
        target = os.path.join(target_dir, os.path.basename(src))
        shutil.copy2(src, target)
        LOG.info("Stored flyer %s -> %s", src, target)
        return target, os.path.getsize(target)

    def read_bytes(self, reference: str) -> bytes:
        if not reference:
            raise InvalidInput("Empty storage reference")
        parsed = urlparse(reference)
        if parsed.scheme in ("http", "https"):
            resp = self.session.get(reference, timeout=60)
            if resp.status_code == 404:
                raise NotFound(f"Flyer not found at {reference}")
            resp.raise_for_status()
            return resp.content
        path = unquote(parsed.path) if parsed.scheme == "file" else reference
        path = expand_abs(path)
        if not os.path.isfile(path):
            raise NotFound(f"Flyer file not found: {path}")
        with open(path, "rb") as fh:
            return fh.read()

    # ---- product renditions ----------------------------------------------------
    def url_for(self, path: str) -> str:
        if self.public_base_url:
            rel = os.path.relpath(path, self.base_dir).replace(os.sep, "/")
            return f"{self.public_base_url}/{rel}"
        return "file://" + os.path.abspath(path).replace(os.sep, "/")

    def save_product_renditions(self, item_id: str, image_bytes: bytes) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Write original/optimized/thumbnail plus multi-resolution files.

        Returns (clean, resolutions) URL mappings.
        """
        try:
            img = Image.open(BytesIO(image_bytes))
            img.load()
        except (OSError, ValueError) as exc:
            raise InvalidInput(f"Generated image for {item_id} could not be decoded: {exc}") from exc

        out_dir = os.path.join(self.images_dir, item_id)
        os.makedirs(out_dir, exist_ok=True)
        flat = _flatten(img)

        def _save(im: Image.Image, name: str, **params) -> str:
            path = os.path.join(out_dir, name)
            im.save(path, **params)
            return self.url_for(path)

        clean = {
            "original": _save(img.convert("RGBA"), "original.png", format="PNG"),
            "optimized": _save(_fit_inside(flat, OPTIMIZED_MAX), "optimized.webp", format="WEBP", quality=WEBP_QUALITY),
            "thumbnail": _save(_fit_inside(flat, THUMBNAIL_SIZE), "thumbnail.webp", format="WEBP", quality=80),
        }
        resolutions = {
            key: _save(ImageOps.contain(flat, (size, size)), f"{key}.webp", format="WEBP", quality=WEBP_QUALITY)
            for key, size in RESOLUTION_SIZES.items()
        }
        resolutions["custom"] = _save(
            ImageOps.pad(flat, CUSTOM_SIZE, color=WHITE), "custom.webp", format="WEBP", quality=WEBP_QUALITY
        )
        LOG.info("Saved %d renditions for item %s in %s", len(clean) + len(resolutions), item_id, out_dir)
        return clean, resolutions
