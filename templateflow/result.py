"""Result values and the error type returned across the template pipeline.

Stage failures never escape ``TemplatePipeline.execute`` as exceptions.  Every
collaborator outcome is an ``Ok`` or an ``Err`` so callers branch on
``result.success`` instead of wrapping calls in ``try``/``except``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------


class TemplateErrorCode(str, Enum):
    """Stable error codes attached to every ``TemplateError``."""

    TEMPLATE_INVALID = "TEMPLATE_INVALID"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_FETCH_FAILED = "TEMPLATE_FETCH_FAILED"
    TEMPLATE_PARSE_ERROR = "TEMPLATE_PARSE_ERROR"
    TEMPLATE_RENDER_FAILED = "TEMPLATE_RENDER_FAILED"
    CACHE_ERROR = "CACHE_ERROR"


class TemplateError(Exception):
    """Raised (or carried inside ``Err``) when a template cannot be scaffolded.

    Usage::

        TemplateError(
            "Built-in template does not exist: vue",
            TemplateErrorCode.TEMPLATE_NOT_FOUND,
            {"template": "vue"},
        )
    """

    def __init__(
        self,
        message: str,
        code: TemplateErrorCode = TemplateErrorCode.TEMPLATE_INVALID,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form for JSON output and state files."""
        return {"code": self.code.value, "message": self.message, **self.context}


# ---------------------------------------------------------------------------
# Result values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome holding ``value``."""

    value: T
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Err:
    """Failed outcome holding the ``error`` that stopped the operation."""

    error: Exception
    success: bool = field(default=False, init=False)


Result = Union[Ok[T], Err]
