from fastapi import APIRouter, Depends

from preturi.api.deps import get_engine, get_view
from preturi.api.trays import brand_groups_from_schema, item_response
from preturi.core.permissions import ViewContext
from preturi.schemas.item import ItemResponse, ItemUpdate
from preturi.services.engine import PreturiEngine

router = APIRouter(prefix="/items", tags=["items"])


@router.patch("/{item_id}", response_model=ItemResponse)
async def update_item(
    item_id: str,
    data: ItemUpdate,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    patch = data.model_dump(exclude_unset=True)
    if "brand_groups" in patch:
        patch["brand_groups"] = brand_groups_from_schema(data.brand_groups) or []
    item = await engine.update_item(item_id, patch, view)
    return item_response(item, engine)


@router.delete("/{item_id}")
async def delete_item(
    item_id: str,
    view: ViewContext = Depends(get_view),
    engine: PreturiEngine = Depends(get_engine),
):
    await engine.delete_item(item_id, view)
    return {"ok": True}
