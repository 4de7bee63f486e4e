"""
kubesetup/models/validator.py

Model construction at the input boundary (CLI flags, cluster files, node
strings). pydantic's ValidationError is re-raised as kubesetup's own, with
the field errors folded into one line fit for `Error: ...` on stderr.
"""

from typing import Any, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from kubesetup.models.errors import ValidationError

M = TypeVar("M", bound=BaseModel)

_VALUE_ERROR_PREFIX = "Value error, "


def _summarize(exc: PydanticValidationError) -> str:
    messages = []
    for err in exc.errors():
        msg = str(err.get("msg", ""))
        if msg.startswith(_VALUE_ERROR_PREFIX):
            msg = msg[len(_VALUE_ERROR_PREFIX) :]
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(messages)


def build_model(model_cls: Type[M], **fields: Any) -> M:
    """
    Constructs `model_cls(**fields)`.

    Raises:
        ValidationError: With every field error on a single line.
    """
    try:
        return model_cls(**fields)
    except PydanticValidationError as e:
        raise ValidationError(_summarize(e)) from e
