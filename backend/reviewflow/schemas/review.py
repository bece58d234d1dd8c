from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from reviewflow.core.errors import AppError, ErrorCategory
from reviewflow.models.review import Recommendation


class ReviewSubmission(BaseModel):
    """
    审稿提交载荷（边界处一次性校验）。

    中文注释:
    - ratings: 具名评分项，每项为 1..5 的整数；
    - comments 去除首尾空白后不能为空，空串视同缺失。
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    ratings: dict[str, int] = Field(..., min_length=1)
    recommendation: Recommendation
    comments: str = Field(..., min_length=1, max_length=20000)

    @field_validator("ratings", mode="before")
    @classmethod
    def _strict_integer_ratings(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        for name, score in value.items():
            if isinstance(score, bool) or not isinstance(score, int):
                raise ValueError(f"rating '{name}' must be an integer")
            if not 1 <= score <= 5:
                raise ValueError(f"rating '{name}' must be within 1..5")
        return value


_MISSING_TYPES = {"missing", "string_too_short", "too_short"}
_REQUIRED_FIELDS = ("ratings", "recommendation", "comments")


def parse_review_submission(payload: Any) -> ReviewSubmission:
    """
    校验审稿载荷；失败时抛出 Validation AppError，并列出 **全部** 缺失/非法字段，而不是只报第一个。
    """
    if not isinstance(payload, dict):
        raise AppError(
            ErrorCategory.VALIDATION,
            "Review payload must be an object",
            context={"missing": list(_REQUIRED_FIELDS), "invalid": []},
        )

    try:
        return ReviewSubmission.model_validate(payload)
    except ValidationError as exc:
        missing: list[str] = []
        invalid: list[dict[str, str]] = []
        for err in exc.errors():
            loc = err.get("loc") or ()
            field = str(loc[0]) if loc else "__root__"
            if err.get("type") in _MISSING_TYPES and len(loc) == 1:
                if field not in missing:
                    missing.append(field)
            else:
                invalid.append({"field": ".".join(str(p) for p in loc), "reason": str(err.get("msg") or "")})

        parts = []
        if missing:
            parts.append(f"missing required fields: {', '.join(missing)}")
        if invalid:
            parts.append(f"invalid fields: {', '.join(i['field'] for i in invalid)}")
        raise AppError(
            ErrorCategory.VALIDATION,
            "Invalid review submission (" + "; ".join(parts) + ")",
            context={"missing": missing, "invalid": invalid},
        ) from exc
