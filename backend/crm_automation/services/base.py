"""Shared helpers for the service layer"""
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..domain.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def build_model(model_cls: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate data into a model, raising the domain ValidationError on failure"""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model_cls.__name__}",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)}
        )
