from __future__ import annotations

from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..catalog.db import FlyerDatabase
from ..catalog.discounts import DiscountTransactionManager
from ..catalog.repair import repair_all_completed, repair_extracted_images
from ..errors import InvalidInput, NotFound, TransactionConflict
from ..logging import get_logger
from ..paths import find_project_root


LOG = get_logger("flyer-api")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (ValueError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


def create_app(
    root_dir: Optional[str] = None,
    *,
    db: Optional[FlyerDatabase] = None,
    manager: Optional[DiscountTransactionManager] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create a Starlette app exposing the discount and repair endpoints."""

    if db is None:
        db = FlyerDatabase(root_dir=find_project_root(root_dir))
    manager = manager or DiscountTransactionManager(db)

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": db.db_path})

    async def summary(_: Request) -> JSONResponse:
        return JSONResponse(db.fetch_summary())

    async def item_detail(request: Request) -> JSONResponse:
        item = db.get_parsed_item(request.path_params["item_id"])
        if item is None:
            raise HTTPException(status_code=404, detail="Parsed item not found")
        return JSONResponse(item.as_dict())

    async def apply_discount(request: Request) -> JSONResponse:
        body = await _json_body(request)
        item_id = body.get("parsedItemId")
        product_id = body.get("productId")
        pct = body.get("discountPercentage")
        if not item_id or not product_id or pct is None:
            raise HTTPException(
                status_code=400,
                detail="Missing required fields: parsedItemId, productId, discountPercentage",
            )
        try:
            result = manager.apply_discount(str(item_id), str(product_id), pct)
        except InvalidInput as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except TransactionConflict as exc:
            LOG.warning("Discount conflict for item %s -> %s: %s", item_id, product_id, exc)
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse(result.as_dict())

    async def repair_images(request: Request) -> JSONResponse:
        body = await _json_body(request)
        item_id = body.get("itemId")
        if item_id:
            try:
                outcome = repair_extracted_images(db, str(item_id))
            except NotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            payload = outcome.as_dict()
            payload["message"] = outcome.message
            return JSONResponse(payload)
        if body.get("fixAll") is True:
            result = repair_all_completed(db)
            return JSONResponse({"success": True, "message": result.message, "results": result.as_dict()})
        raise HTTPException(status_code=400, detail="Either itemId or fixAll=true is required")

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/summary", summary, methods=["GET"]),
        Route("/api/items/{item_id:str}", item_detail, methods=["GET"]),
        Route("/api/discounts/apply", apply_discount, methods=["POST"]),
        Route("/api/repair/extracted-images", repair_images, methods=["POST"]),
    ]

    app = Starlette(debug=False, routes=routes, exception_handlers={HTTPException: _http_error})

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


__all__ = ["create_app"]
