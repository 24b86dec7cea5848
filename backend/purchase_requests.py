import logging
from typing import Any, List, Mapping, Optional, Union

from database import PRODUCTS, REQUESTS, USERS, Database, persistence, to_public, utcnow
from errors import ForbiddenError, NotFoundError, ValidationError
from events import REQUEST_CREATED, REQUEST_UPDATED, EventSink, emit
from lifecycle import INITIAL_STATUS, RequestStatus, check_transition, parse_status
from schemas import Identity, RequestCreate
from validators import parse

logger = logging.getLogger(__name__)


class RequestService:
    """
    Vendor purchase requests against farmer products.

    Status is the only field that changes after creation, and it only moves
    along the lifecycle table. Product quantity is never touched here.
    """

    def __init__(self, database: Database, events: EventSink):
        self.database = database
        self.events = events

    async def _check_references(self, payload: RequestCreate):
        async with persistence("request_references"):
            product = await self.database.get_document(PRODUCTS, payload.productId)
            farmer = await self.database[USERS].find_one({"_id": payload.farmerId, "type": "farmer"})
            vendor = await self.database[USERS].find_one({"_id": payload.vendorId, "type": "vendor"})
        if not product:
            raise NotFoundError("Product not found")
        if not farmer:
            raise NotFoundError("Farmer not found")
        if not vendor:
            raise NotFoundError("Vendor not found")
        if product["farmerId"] != payload.farmerId:
            raise ValidationError(["Product does not belong to this farmer"])

    async def create(self, payload: Union[RequestCreate, Mapping[str, Any]], actor: Optional[Identity] = None) -> dict:
        payload = parse(RequestCreate, payload)
        if actor is not None and actor.id != payload.vendorId:
            raise ForbiddenError("Requests can only be placed by the requesting vendor")
        await self._check_references(payload)
        req_doc = {
            "productId": payload.productId,
            "farmerId": payload.farmerId,
            "vendorId": payload.vendorId,
            "quantity": payload.quantity,
            "notes": payload.notes,
            "status": INITIAL_STATUS.value,
            "timestamp": utcnow(),
        }
        async with persistence("create_request"):
            req_doc = await self.database.create_document(REQUESTS, req_doc)
        request = to_public(req_doc)
        logger.info(
            "request_created id=%s product_id=%s vendor_id=%s quantity=%s",
            request["id"], request["productId"], request["vendorId"], request["quantity"],
        )
        await emit(self.events, REQUEST_CREATED, request)
        return request

    async def get(self, request_id: str) -> dict:
        async with persistence("get_request"):
            doc = await self.database.get_document(REQUESTS, request_id)
        if not doc:
            raise NotFoundError("Request not found")
        return to_public(doc)

    async def list(self, farmer_id: Optional[str] = None, vendor_id: Optional[str] = None) -> List[dict]:
        if farmer_id:
            flt = {"farmerId": farmer_id}
        elif vendor_id:
            flt = {"vendorId": vendor_id}
        else:
            flt = {}
        async with persistence("list_requests"):
            docs = await self.database.get_documents(REQUESTS, flt, sort=[("timestamp", -1)])
        return [to_public(d) for d in docs]

    async def update_status(self, request_id: str, status: Optional[str], actor: Identity) -> dict:
        requested = parse_status(status)
        request = await self.get(request_id)
        if actor.id not in (request["farmerId"], request["vendorId"]):
            raise ForbiddenError("Only participants of a request may change its status")
        current = RequestStatus(request["status"])
        check_transition(current, requested, actor.type)
        async with persistence("update_request_status"):
            res = await self.database[REQUESTS].update_one(
                {"_id": request_id}, {"$set": {"status": requested.value}}
            )
        if res.matched_count == 0:
            raise NotFoundError("Request not found")
        logger.info(
            "request_status_changed id=%s from=%s to=%s actor_id=%s",
            request_id, current.value, requested.value, actor.id,
        )
        change = {"id": request_id, "status": requested.value}
        await emit(self.events, REQUEST_UPDATED, change)
        return change
