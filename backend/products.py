import logging
import re
from typing import Any, Mapping, Optional, Union

from database import PRODUCTS, REQUESTS, Database, persistence, to_public, utcnow
from errors import ConflictError, ForbiddenError, NotFoundError
from events import PRODUCT_CREATED, EventSink, emit
from schemas import Identity, ProductCreate, ProductUpdate
from validators import parse, raise_for, validate_product_update

logger = logging.getLogger(__name__)

SORT_FIELDS = ("timestamp", "price", "name", "quantity")
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def listing_filter(farmer_id: Optional[str] = None, search: Optional[str] = None) -> dict:
    flt = {}
    if farmer_id:
        flt["farmerId"] = farmer_id
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        flt["$or"] = [{"name": pattern}, {"description": pattern}]
    return flt


def listing_sort(sort: Optional[str], order: Optional[str]):
    field = str(sort).lower() if sort else "timestamp"
    if field not in SORT_FIELDS:
        field = "timestamp"
    direction = 1 if str(order).lower() == "asc" else -1
    return [(field, direction), ("_id", direction)]


class ProductService:
    def __init__(self, database: Database, events: EventSink):
        self.database = database
        self.events = events

    async def list(
        self,
        farmer_id: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = DEFAULT_LIMIT,
        sort: str = "timestamp",
        order: str = "desc",
    ) -> dict:
        page = max(1, int(page))
        limit = min(max(1, int(limit)), MAX_LIMIT)
        flt = listing_filter(farmer_id, search)
        async with persistence("list_products"):
            docs = await self.database.get_documents(
                PRODUCTS, flt, sort=listing_sort(sort, order), skip=(page - 1) * limit, limit=limit
            )
            total = await self.database.count_documents(PRODUCTS, flt)
        return {"items": [to_public(d) for d in docs], "page": page, "limit": limit, "total": total}

    async def get(self, product_id: str) -> dict:
        async with persistence("get_product"):
            doc = await self.database.get_document(PRODUCTS, product_id)
        if not doc:
            raise NotFoundError("Product not found")
        return to_public(doc)

    async def create(self, payload: Union[ProductCreate, Mapping[str, Any]], actor: Identity) -> dict:
        payload = parse(ProductCreate, payload)
        if not payload.farmerId:
            payload = payload.model_copy(update={"farmerId": actor.id})
        elif payload.farmerId != actor.id:
            raise ForbiddenError("Products can only be listed by their own farmer")
        product_doc = payload.model_dump()
        product_doc["timestamp"] = utcnow()
        async with persistence("create_product"):
            product_doc = await self.database.create_document(PRODUCTS, product_doc)
        product = to_public(product_doc)
        logger.info("product_created id=%s farmer_id=%s", product["id"], product["farmerId"])
        await emit(self.events, PRODUCT_CREATED, product)
        return product

    async def _owned(self, product_id: str, actor: Identity) -> dict:
        product = await self.get(product_id)
        if product["farmerId"] != actor.id:
            raise ForbiddenError("Not owner")
        return product

    async def update(self, product_id: str, payload: Union[ProductUpdate, Mapping[str, Any]], actor: Identity) -> dict:
        payload = parse(ProductUpdate, payload)
        raise_for(validate_product_update(payload))
        await self._owned(product_id, actor)
        updates = payload.model_dump(exclude_unset=True)
        async with persistence("update_product"):
            await self.database[PRODUCTS].update_one({"_id": product_id}, {"$set": updates})
            doc = await self.database.get_document(PRODUCTS, product_id)
        if not doc:
            raise NotFoundError("Product not found")
        logger.info("product_updated id=%s fields=%s", product_id, ",".join(sorted(updates)))
        return to_public(doc)

    async def delete(self, product_id: str, actor: Identity):
        """Remove a product that no purchase request points at."""
        await self._owned(product_id, actor)
        async with persistence("delete_product"):
            if await self.database.count_documents(REQUESTS, {"productId": product_id}):
                raise ConflictError("Product has purchase requests")
            res = await self.database[PRODUCTS].delete_one({"_id": product_id})
        if res.deleted_count == 0:
            raise NotFoundError("Product not found")
        logger.info("product_deleted id=%s", product_id)
