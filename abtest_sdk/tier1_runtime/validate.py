"""
abtest_sdk.tier1_runtime.validate
──────────────────────────────────────
Input/schema validation via Pydantic v2. Raises the SDK ValidationError (not
raw Pydantic errors) so callers only ever catch one type.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from abtest_sdk.tier0_core.errors import ValidationError

T = TypeVar("T", bound=BaseModel)


def validate_input(model: Type[T], data: Any) -> T:
    """
    Validate raw data against a Pydantic model.

    Usage:
        event = validate_input(Event, raw)
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        fields = {
            ".".join(str(loc) for loc in err["loc"]): err["msg"]
            for err in exc.errors()
        }
        raise ValidationError(
            code="validation_error",
            user_message=f"{model.__name__} validation failed.",
            fields=fields,
        ) from exc


def require_fields(data: Mapping[str, Any] | None, required: Iterable[str], what: str) -> None:
    """
    Raise ValidationError naming every field of *required* that is missing or
    empty in *data*.
    """
    if not data:
        raise ValidationError(user_message=f"{what} data required.")
    missing = [f for f in required if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            user_message=f"Missing required fields: {', '.join(missing)}",
            fields={f: "required" for f in missing},
        )


__all__ = ["validate_input", "require_fields"]
