import base64
import os
import sys
from io import BytesIO
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

# Ensure the repository's src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))

from flyer_discounts.catalog.db import FlyerDatabase  # noqa: E402
from flyer_discounts.catalog.storage import ImageStorage  # noqa: E402
from flyer_discounts.domain.models import CatalogProduct, ParsedItem  # noqa: E402


def png_bytes(size: int = 64) -> bytes:
    """Noisy PNG so the encoded payload is comfortably above the minimum size."""
    img = Image.effect_noise((size, size), 64).convert("RGB")
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def image_prediction(data: Optional[bytes] = None) -> Dict[str, Any]:
    return {"predictions": [{"bytesBase64Encoded": base64.b64encode(data or png_bytes()).decode("ascii")}]}


class FakeVision:
    """Stands in for VisionClient; records every call."""

    def __init__(self, responder: Optional[Callable[[str, Any, str], Any]] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._responder = responder or (lambda prompt, image, tag: image_prediction())

    def call_vision_api(self, prompt: str, image_bytes: Any, operation_tag: str) -> Any:
        self.calls.append({"prompt": prompt, "tag": operation_tag})
        return self._responder(prompt, image_bytes, operation_tag)


class FakeLLM:
    """Stands in for LanguageClient; the responder maps a prompt to raw model text."""

    def __init__(self, responder: Callable[[str], str]) -> None:
        self.prompts: List[str] = []
        self.operations: List[str] = []
        self._responder = responder

    def complete(self, prompt: str, *, operation: str = "complete", **kwargs: Any) -> str:
        self.prompts.append(prompt)
        self.operations.append(operation)
        return self._responder(prompt)

    def complete_with_image(self, prompt: str, image_bytes: bytes, *, operation: str = "complete-with-image", **kwargs: Any) -> str:
        return self.complete(prompt, operation=operation)


@pytest.fixture
def db(tmp_path) -> FlyerDatabase:
    return FlyerDatabase(db_path=str(tmp_path / "var" / "flyerdb" / "flyers.sqlite3"))


@pytest.fixture
def storage(tmp_path) -> ImageStorage:
    return ImageStorage(str(tmp_path))


@pytest.fixture
def flyer(db):
    return db.insert_flyer(storage_reference="/nowhere/flyer.png", filename="flyer.png")


@pytest.fixture
def make_item(db, flyer):
    counter = {"n": 0}

    def _make(name: str = "Milk 1L", *, old_price: float = 100.0, discount_price: Optional[float] = 80.0, **kw: Any) -> ParsedItem:
        counter["n"] += 1
        item = ParsedItem(
            id=kw.pop("id", f"item-{counter['n']}"),
            flyer_image_id=flyer.id,
            product_name=name,
            old_price=old_price,
            discount_price=discount_price,
            **kw,
        )
        return db.insert_parsed_item(item)

    return _make


@pytest.fixture
def make_product(db):
    def _make(product_id: str, name: str, old_price: Optional[float] = 120.0, **kw: Any) -> CatalogProduct:
        return db.upsert_product(CatalogProduct(id="", product_id=product_id, name=name, old_price=old_price, **kw))

    return _make
