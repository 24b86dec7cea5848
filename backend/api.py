import logging
import os
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from config import ALLOWED_IMAGE_EXTENSIONS, MAX_UPLOAD_BYTES, UPLOAD_DIR
from context import AppContext
from errors import MarketplaceError, ValidationError
from events import ConnectionHub
from schemas import (
    AuthResponse, Contact, Identity, LoginPayload, Message, MessageCreate, Product, ProductCreate,
    ProductPage, ProductUpdate, PublicUser, PurchaseRequest, RegisterPayload, RequestCreate,
    StatusChange, StatusUpdate,
)
from security import get_current_identity, require_role

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_CHUNK_BYTES = 64 * 1024


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def write_file(path: str, content: bytes):
    with open(path, "wb") as fh:
        fh.write(content)


async def store_image(image: UploadFile) -> str:
    if not allowed_file(image.filename):
        raise ValidationError([f"Image must be one of: {', '.join(sorted(ALLOWED_IMAGE_EXTENSIONS))}"])
    content = bytearray()
    while True:
        chunk = await image.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        content.extend(chunk)
        if len(content) > MAX_UPLOAD_BYTES:
            raise ValidationError([f"Image too large (max {MAX_UPLOAD_BYTES} bytes)"])
    filename = f"{uuid.uuid4().hex}.{image.filename.rsplit('.', 1)[1].lower()}"
    await run_in_threadpool(write_file, os.path.join(UPLOAD_DIR, filename), bytes(content))
    return f"/uploads/{filename}"


# Health

@router.get("/health")
async def health(ctx: AppContext = Depends(get_context)):
    try:
        await ctx.database.ping()
        database = "connected"
    except PyMongoError:
        logger.warning("health_ping_failed", exc_info=True)
        database = "unavailable"
    clients = ctx.events.connection_count if isinstance(ctx.events, ConnectionHub) else 0
    return {"status": "Server is running", "database": database, "clients": clients}

# Users

@router.post("/users/register", status_code=201, response_model=AuthResponse)
async def register(payload: RegisterPayload, ctx: AppContext = Depends(get_context)):
    return await ctx.users.register(payload)

@router.post("/users/login", response_model=AuthResponse)
async def login(payload: LoginPayload, ctx: AppContext = Depends(get_context)):
    return await ctx.users.login(payload)

@router.get("/users/me", response_model=Identity)
async def me(identity: Identity = Depends(get_current_identity)):
    return identity

@router.get("/users", response_model=List[PublicUser])
async def list_users(type: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    return await ctx.users.list(type)

@router.get("/users/{user_id}", response_model=PublicUser)
async def get_user(user_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.users.get(user_id)

# Products

@router.get("/products", response_model=ProductPage)
async def list_products(
    farmerId: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    sort: str = "timestamp",
    order: str = "desc",
    ctx: AppContext = Depends(get_context),
):
    return await ctx.products.list(farmerId, search, page, limit, sort, order)

@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.products.get(product_id)

@router.post("/products", status_code=201, response_model=Product)
async def create_product(
    payload: ProductCreate,
    identity: Identity = Depends(require_role("farmer")),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.products.create(payload, identity)

@router.post("/products/upload", status_code=201, response_model=Product)
async def create_product_with_image(
    name: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    quantity: Optional[float] = Form(None),
    unit: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    location: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    farmerId: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(require_role("farmer")),
    ctx: AppContext = Depends(get_context),
):
    image_path = await store_image(image) if image is not None and image.filename else None
    data = {
        "farmerId": farmerId, "name": name, "category": category, "quantity": quantity, "unit": unit,
        "price": price, "location": location, "description": description, "image": image_path,
    }
    try:
        return await ctx.products.create(data, identity)
    except MarketplaceError:
        if image_path:
            os.remove(os.path.join(UPLOAD_DIR, os.path.basename(image_path)))
        raise

@router.put("/products/{product_id}", response_model=Product)
async def update_product(
    product_id: str,
    payload: ProductUpdate,
    identity: Identity = Depends(require_role("farmer")),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.products.update(product_id, payload, identity)

@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    identity: Identity = Depends(require_role("farmer")),
    ctx: AppContext = Depends(get_context),
):
    await ctx.products.delete(product_id, identity)
    return {"message": "Product deleted"}

# Purchase requests

@router.get("/requests", response_model=List[PurchaseRequest])
async def list_requests(
    farmerId: Optional[str] = None,
    vendorId: Optional[str] = None,
    ctx: AppContext = Depends(get_context),
):
    return await ctx.requests.list(farmerId, vendorId)

@router.get("/requests/{request_id}", response_model=PurchaseRequest)
async def get_request(request_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.requests.get(request_id)

@router.post("/requests", status_code=201, response_model=PurchaseRequest)
async def create_request(
    payload: RequestCreate,
    identity: Identity = Depends(require_role("vendor")),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.requests.create(payload, identity)

@router.patch("/requests/{request_id}", response_model=StatusChange)
async def update_request_status(
    request_id: str,
    payload: StatusUpdate,
    identity: Identity = Depends(require_role("farmer", "vendor")),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.requests.update_status(request_id, payload.status, identity)

# Messaging

@router.get("/messages", response_model=List[Message])
async def list_messages(
    userId1: Optional[str] = None,
    userId2: Optional[str] = None,
    ctx: AppContext = Depends(get_context),
):
    return await ctx.messages.list_between(userId1, userId2)

@router.get("/messages/conversations/{user_id}", response_model=List[Contact])
async def list_conversations(user_id: str, ctx: AppContext = Depends(get_context)):
    return await ctx.messages.list_contacts(user_id)

@router.post("/messages", status_code=201, response_model=Message)
async def send_message(
    payload: MessageCreate,
    identity: Identity = Depends(get_current_identity),
    ctx: AppContext = Depends(get_context),
):
    return await ctx.messages.send(payload, identity)

# Real-time events

@router.websocket("/ws")
async def event_stream(websocket: WebSocket):
    hub = websocket.app.state.context.events
    if not isinstance(hub, ConnectionHub):
        logger.warning("event_stream_unavailable sink=%s", type(hub).__name__)
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    await hub.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(websocket)
