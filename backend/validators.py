"""
Payload parsing for the service layer.

Field rules are declared on the pydantic models in ``schemas``. The helpers
here run those models over plain dicts and turn pydantic's error list into
the itemized ValidationError the API reports, plus the few rules a single
model cannot state.
"""
from typing import Any, Iterable, List, Mapping, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from errors import ValidationError
from schemas import ProductUpdate

M = TypeVar("M", bound=BaseModel)

LOCATION_ROOTS = ("body", "query", "path")
UPDATE_REQUIRED = ("name", "category", "quantity", "unit", "price")


def format_errors(errors: Iterable[Mapping[str, Any]]) -> List[str]:
    """Render pydantic error dicts as ``"field: message"`` strings."""
    items = []
    for err in errors:
        field = ".".join(str(part) for part in err.get("loc", ()) if part not in LOCATION_ROOTS)
        items.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return items


def parse(model: Type[M], data: Union[M, Mapping[str, Any]]) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except SchemaError as exc:
        raise ValidationError(format_errors(exc.errors())) from exc


def raise_for(errors: List[str]):
    if errors:
        raise ValidationError(errors)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_product_update(payload: ProductUpdate) -> List[str]:
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        return ["No fields to update"]
    # An explicit null would clear a field every product must have.
    return [f"{name}: Field required" for name in UPDATE_REQUIRED if name in fields and fields[name] is None]
