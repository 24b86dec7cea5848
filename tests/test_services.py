import math

import pytest

from context import AppContext
from database import Database
from errors import AuthError, ConflictError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from events import MESSAGE_SENT, PRODUCT_CREATED, REQUEST_CREATED, REQUEST_UPDATED
from mongomock_motor import AsyncMongoMockClient
from schemas import Identity, LoginPayload, MessageCreate, ProductCreate, ProductUpdate, RegisterPayload, RequestCreate
from validators import parse
from security import decode_token


class FailingSink:
    async def publish(self, event):
        raise ConnectionError("transport down")


# Users

async def test_login_token_matches_registration(context):
    registered = await context.users.register(RegisterPayload(
        type="vendor", name="Green Grocer", email="Shop@Market.io", password="hunter22",
        businessName="Green Grocer Ltd",
    ))
    assert "password" not in registered["user"]
    assert registered["user"]["email"] == "shop@market.io"

    logged_in = await context.users.login(LoginPayload(email="shop@market.io", password="hunter22"))
    identity = decode_token(logged_in["access_token"])
    user = registered["user"]
    assert (identity.id, identity.type, identity.name) == (user["id"], "vendor", "Green Grocer")


async def test_duplicate_email_conflicts(context, make_user):
    await make_user("farmer", email="dup@farm.org")
    with pytest.raises(ConflictError):
        await make_user("vendor", email="DUP@farm.org")
    users = await context.users.list()
    assert [u["email"] for u in users] == ["dup@farm.org"]


async def test_registration_collects_every_error(context):
    with pytest.raises(ValidationError) as exc:
        await context.users.register({"type": "admin", "name": "A", "email": "nope", "password": "123"})
    assert [e.split(":")[0] for e in exc.value.errors] == ["type", "name", "email", "password"]


async def test_login_with_wrong_password(context, make_user):
    await make_user("farmer", email="f@farm.org")
    with pytest.raises(AuthError):
        await context.users.login(LoginPayload(email="f@farm.org", password="wrong-one"))
    with pytest.raises(AuthError):
        await context.users.login(LoginPayload(email="ghost@farm.org", password="whatever"))


async def test_get_missing_user(context):
    with pytest.raises(NotFoundError):
        await context.users.get("missing")


# Products

async def test_product_listing_filters_and_pages(context, sink, make_user, make_product):
    farmer = await make_user("farmer")
    other = await make_user("farmer", email="other@farm.org")
    await make_product(farmer, name="Roma Tomatoes", price=3)
    await make_product(farmer, name="Carrots", description="Sweet tomato-red carrots", price=2)
    await make_product(farmer, name="Potatoes", price=1)
    await make_product(other, name="Cherry Tomatoes", price=9)

    page = await context.products.list(farmer_id=farmer.id, search="TOMATO", sort="price", order="asc")
    assert page["total"] == 2
    assert [p["name"] for p in page["items"]] == ["Carrots", "Roma Tomatoes"]

    first = await context.products.list(farmer_id=farmer.id, page=1, limit=2, sort="price", order="desc")
    second = await context.products.list(farmer_id=farmer.id, page=2, limit=2, sort="price", order="desc")
    assert first["total"] == second["total"] == 3
    assert [p["price"] for p in first["items"] + second["items"]] == [3, 2, 1]

    assert len(sink.named(PRODUCT_CREATED)) == 4


async def test_unknown_sort_falls_back_to_timestamp(context, make_user, make_product):
    farmer = await make_user("farmer")
    await make_product(farmer, name="First")
    await make_product(farmer, name="Second")
    page = await context.products.list(sort="drop table", order="sideways")
    assert len(page["items"]) == 2


async def test_product_rules(context, make_user):
    farmer = await make_user("farmer")
    with pytest.raises(ValidationError) as exc:
        await context.products.create({"name": "X", "quantity": 0, "price": -1}, farmer)
    assert [e.split(":")[0] for e in exc.value.errors] == ["name", "category", "quantity", "unit", "price"]

    with pytest.raises(ForbiddenError):
        await context.products.create(ProductCreate(
            farmerId="someone-else", name="Beans", category="Veg", quantity=1, unit="kg", price=1,
        ), farmer)


@pytest.mark.parametrize("bad", [math.nan, math.inf, 1e400])
async def test_product_amounts_must_be_finite(context, sink, make_user, bad):
    farmer = await make_user("farmer")
    with pytest.raises(ValidationError) as exc:
        await context.products.create({
            "name": "Beans", "category": "Veg", "quantity": bad, "unit": "kg", "price": bad,
        }, farmer)
    assert [e.split(":")[0] for e in exc.value.errors] == ["quantity", "price"]
    assert sink.named(PRODUCT_CREATED) == []
    assert (await context.products.list())["total"] == 0


async def test_product_update_cannot_null_required_fields(context, make_user, make_product):
    farmer = await make_user("farmer")
    product = await make_product(farmer)
    with pytest.raises(ValidationError) as exc:
        await context.products.update(product["id"], {"price": None, "description": None}, farmer)
    assert exc.value.errors == ["price: Field required"]
    with pytest.raises(ValidationError):
        await context.products.update(product["id"], {"quantity": math.nan}, farmer)
    assert (await context.products.get(product["id"]))["price"] == 5


async def test_listing_clamps_page_and_limit(context, make_user, make_product):
    farmer = await make_user("farmer")
    await make_product(farmer)
    page = await context.products.list(page=0, limit=500)
    assert (page["page"], page["limit"], page["total"]) == (1, 100, 1)
    assert len(page["items"]) == 1
    page = await context.products.list(page=-3, limit=0)
    assert (page["page"], page["limit"]) == (1, 1)

async def test_only_owner_mutates_product(context, make_user, make_product):
    owner = await make_user("farmer")
    intruder = await make_user("farmer", email="intruder@farm.org")
    product = await make_product(owner)

    with pytest.raises(ForbiddenError):
        await context.products.update(product["id"], ProductUpdate(price=1), intruder)
    with pytest.raises(ForbiddenError):
        await context.products.delete(product["id"], intruder)

    updated = await context.products.update(product["id"], ProductUpdate(price=7.5), owner)
    assert updated["price"] == 7.5
    assert updated["quantity"] == 10

    with pytest.raises(ValidationError):
        await context.products.update(product["id"], ProductUpdate(), owner)

    await context.products.delete(product["id"], owner)
    with pytest.raises(NotFoundError):
        await context.products.get(product["id"])


async def test_product_with_requests_cannot_be_deleted(context, make_user, make_product):
    farmer = await make_user("farmer")
    vendor = await make_user("vendor")
    product = await make_product(farmer)
    await context.requests.create({
        "productId": product["id"], "farmerId": farmer.id, "vendorId": vendor.id, "quantity": 2,
    }, vendor)
    with pytest.raises(ConflictError):
        await context.products.delete(product["id"], farmer)
    assert (await context.products.get(product["id"]))["id"] == product["id"]
    assert len(await context.requests.list(farmer_id=farmer.id)) == 1


def test_parse_itemizes_errors_and_keeps_models():
    payload = RequestCreate(productId="p1", farmerId="f1", vendorId="v1", quantity=2)
    assert parse(RequestCreate, payload) is payload
    assert parse(RequestCreate, {"productId": " p1 ", "farmerId": "f1", "vendorId": "v1", "quantity": "2"}).productId == "p1"
    with pytest.raises(ValidationError) as exc:
        parse(MessageCreate, {"senderId": "a", "text": "x" * 5001})
    assert [e.split(":")[0] for e in exc.value.errors] == ["recipientId", "text"]

# Purchase requests

@pytest.fixture
async def deal(make_user, make_product):
    farmer = await make_user("farmer")
    vendor = await make_user("vendor")
    product = await make_product(farmer)
    return farmer, vendor, product


def request_for(farmer, vendor, product, quantity=3):
    return {"productId": product["id"], "farmerId": farmer.id, "vendorId": vendor.id, "quantity": quantity}


@pytest.mark.parametrize("quantity", [0, -2, math.nan, math.inf, -math.inf])
async def test_request_quantity_must_be_positive_and_finite(context, sink, deal, quantity):
    farmer, vendor, product = deal
    with pytest.raises(ValidationError) as exc:
        await context.requests.create(request_for(farmer, vendor, product, quantity), vendor)
    assert exc.value.errors[0].startswith("quantity:")
    assert sink.named(REQUEST_CREATED) == []
    assert await context.requests.list(vendor_id=vendor.id) == []


async def test_request_missing_ids_are_all_reported(context):
    with pytest.raises(ValidationError) as exc:
        await context.requests.create({"productId": " ", "quantity": 1})
    assert [e.split(":")[0] for e in exc.value.errors] == ["productId", "farmerId", "vendorId"]


async def test_request_starts_pending(context, sink, deal):
    farmer, vendor, product = deal
    request = await context.requests.create(request_for(farmer, vendor, product), vendor)
    assert request["status"] == "pending"
    assert sink.named(REQUEST_CREATED)[0].data == request
    assert (await context.requests.get(request["id"]))["status"] == "pending"


async def test_request_references_must_exist(context, deal):
    farmer, vendor, product = deal
    with pytest.raises(NotFoundError):
        await context.requests.create(RequestCreate(
            productId="no-such-product", farmerId=farmer.id, vendorId=vendor.id, quantity=1,
        ))
    with pytest.raises(NotFoundError):
        await context.requests.create(RequestCreate(
            productId=product["id"], farmerId=farmer.id, vendorId=farmer.id, quantity=1,
        ))


async def test_vendor_cannot_request_for_someone_else(context, make_user, deal):
    farmer, vendor, product = deal
    other_vendor = await make_user("vendor", email="other@shop.io")
    with pytest.raises(ForbiddenError):
        await context.requests.create(request_for(farmer, vendor, product), other_vendor)


async def test_full_lifecycle_keeps_last_status(context, sink, deal):
    farmer, vendor, product = deal
    request = await context.requests.create(request_for(farmer, vendor, product))

    for status, actor in [("approved", farmer), ("in-transit", farmer), ("completed", vendor)]:
        change = await context.requests.update_status(request["id"], status, actor)
        assert change == {"id": request["id"], "status": status}
        assert (await context.requests.get(request["id"]))["status"] == status

    assert [e.data["status"] for e in sink.named(REQUEST_UPDATED)] == ["approved", "in-transit", "completed"]
    # stock is advisory only
    assert (await context.products.get(product["id"]))["quantity"] == 10


async def test_illegal_transition_is_rejected(context, sink, deal):
    farmer, vendor, product = deal
    request = await context.requests.create(request_for(farmer, vendor, product))
    with pytest.raises(InvalidTransitionError):
        await context.requests.update_status(request["id"], "completed", farmer)
    assert (await context.requests.get(request["id"]))["status"] == "pending"
    assert sink.named(REQUEST_UPDATED) == []


async def test_status_change_requires_participant(context, make_user, deal):
    farmer, vendor, product = deal
    outsider = await make_user("farmer", email="outsider@farm.org")
    request = await context.requests.create(request_for(farmer, vendor, product))
    with pytest.raises(ForbiddenError):
        await context.requests.update_status(request["id"], "approved", outsider)
    with pytest.raises(NotFoundError):
        await context.requests.update_status("missing", "approved", farmer)


async def test_list_requests_by_party(context, make_user, deal):
    farmer, vendor, product = deal
    await context.requests.create(request_for(farmer, vendor, product, 1))
    await context.requests.create(request_for(farmer, vendor, product, 2))
    assert len(await context.requests.list(farmer_id=farmer.id)) == 2
    assert len(await context.requests.list(vendor_id=vendor.id)) == 2
    assert await context.requests.list(vendor_id="nobody") == []


async def test_failed_publish_does_not_fail_write():
    ctx = AppContext(Database(client=AsyncMongoMockClient()), events=FailingSink())
    await ctx.start()
    try:
        user = (await ctx.users.register(RegisterPayload(
            type="farmer", name="Quiet Farm", email="quiet@farm.org", password="secret123",
        )))["user"]
        farmer = Identity(id=user["id"], type="farmer", name=user["name"])
        product = await ctx.products.create(ProductCreate(
            name="Leeks", category="Veg", quantity=4, unit="kg", price=2,
        ), farmer)
        assert (await ctx.products.get(product["id"]))["name"] == "Leeks"
    finally:
        await ctx.close()


# Messages

def message(sender, recipient, text="hello"):
    return {"senderId": sender.id, "recipientId": recipient.id, "text": text}


async def test_message_length_limit(context, make_user):
    a = await make_user("farmer")
    b = await make_user("vendor")
    with pytest.raises(ValidationError):
        await context.messages.send(message(a, b, "x" * 5001))
    sent = await context.messages.send(message(a, b, "x" * 5000))
    assert len(sent["text"]) == 5000
    with pytest.raises(ValidationError):
        await context.messages.send(message(a, b, "   "))


async def test_message_to_unknown_recipient(context, make_user):
    a = await make_user("farmer")
    with pytest.raises(NotFoundError):
        await context.messages.send(MessageCreate(senderId=a.id, recipientId="ghost", text="hi"))


async def test_sender_must_be_caller(context, make_user):
    a = await make_user("farmer")
    b = await make_user("vendor")
    with pytest.raises(ForbiddenError):
        await context.messages.send(message(a, b), actor=b)


async def test_thread_is_ordered_and_symmetric(context, sink, make_user):
    a = await make_user("farmer")
    b = await make_user("vendor")
    c = await make_user("logistics")
    for i in range(4):
        await context.messages.send(message(a, b, f"a{i}"))
        await context.messages.send(message(b, a, f"b{i}"))
    await context.messages.send(message(c, a, "pickup at noon"))

    thread = await context.messages.list_between(a.id, b.id)
    assert len(thread) == 8
    stamps = [m["timestamp"] for m in thread]
    assert stamps == sorted(stamps)
    assert thread == await context.messages.list_between(b.id, a.id)
    assert len(sink.named(MESSAGE_SENT)) == 9

    with pytest.raises(ValidationError):
        await context.messages.list_between(a.id, None)


async def test_contacts_are_distinct(context, make_user):
    a = await make_user("farmer")
    b = await make_user("vendor")
    c = await make_user("logistics")
    await context.messages.send(message(a, b))
    await context.messages.send(message(b, a))
    await context.messages.send(message(c, a))
    contacts = [c["contactId"] for c in await context.messages.list_contacts(a.id)]
    assert sorted(contacts) == sorted([b.id, c.id])
    assert await context.messages.list_contacts("loner") == []


async def test_contacts_most_recent_first(context, make_user):
    a = await make_user("farmer")
    b = await make_user("vendor")
    c = await make_user("logistics")
    await context.messages.send(message(a, b, "first"))
    await context.messages.send(message(c, a, "second"))
    assert [x["contactId"] for x in await context.messages.list_contacts(a.id)] == [c.id, b.id]

    await context.messages.send(message(b, a, "third"))
    assert [x["contactId"] for x in await context.messages.list_contacts(a.id)] == [b.id, c.id]
    assert [x["contactId"] for x in await context.messages.list_contacts(c.id)] == [a.id]
