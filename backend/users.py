import logging
from typing import Any, List, Mapping, Optional, Union

from pymongo.errors import DuplicateKeyError

from database import USERS, Database, persistence, to_public, utcnow
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from schemas import USER_TYPES, Identity, LoginPayload, RegisterPayload
from security import create_access_token, hash_password, verify_password
from validators import normalize_email, parse

logger = logging.getLogger(__name__)


def public_user(doc: dict) -> dict:
    user = to_public(doc)
    user.pop("password", None)
    return user


def auth_response(user: dict) -> dict:
    identity = Identity(id=user["id"], type=user["type"], name=user["name"])
    return {"access_token": create_access_token(identity), "token_type": "bearer", "user": user}


class UserService:
    def __init__(self, database: Database):
        self.database = database

    async def register(self, payload: Union[RegisterPayload, Mapping[str, Any]]) -> dict:
        payload = parse(RegisterPayload, payload)
        email = normalize_email(payload.email)
        user_doc = {
            "type": payload.type,
            "name": payload.name,
            "email": email,
            "password": hash_password(payload.password),
            "phone": payload.phone,
            "location": payload.location,
            "farmName": payload.farmName,
            "businessName": payload.businessName,
            "createdAt": utcnow(),
        }
        async with persistence("register"):
            if await self.database[USERS].find_one({"email": email}):
                raise ConflictError("Email already registered")
            try:
                user_doc = await self.database.create_document(USERS, user_doc)
            except DuplicateKeyError:
                raise ConflictError("Email already registered")
        logger.info("user_registered id=%s type=%s", user_doc["_id"], user_doc["type"])
        return auth_response(public_user(user_doc))

    async def login(self, payload: Union[LoginPayload, Mapping[str, Any]]) -> dict:
        payload = parse(LoginPayload, payload)
        async with persistence("login"):
            user = await self.database[USERS].find_one({"email": normalize_email(payload.email)})
        if not user or not verify_password(payload.password, user.get("password", "")):
            raise AuthError("Invalid credentials")
        return auth_response(public_user(user))

    async def get(self, user_id: str) -> dict:
        async with persistence("get_user"):
            user = await self.database.get_document(USERS, user_id)
        if not user:
            raise NotFoundError("User not found")
        return public_user(user)

    async def list(self, user_type: Optional[str] = None) -> List[dict]:
        if user_type is not None and user_type not in USER_TYPES:
            raise ValidationError([f"Unknown user type '{user_type}'"])
        flt = {"type": user_type} if user_type else {}
        async with persistence("list_users"):
            docs = await self.database.get_documents(USERS, flt, sort=[("createdAt", 1)])
        return [public_user(d) for d in docs]

