from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Recommendation(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    REVISE = "revise"


class Review(BaseModel):
    """审稿意见（创建后不可变，追加到稿件的 reviews 序列）"""

    model_config = ConfigDict(frozen=True)

    id: str
    manuscript_id: str
    reviewer_id: str
    ratings: dict[str, int] = Field(..., min_length=1)
    recommendation: Recommendation
    comments: str = Field(..., min_length=1)
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("ratings")
    @classmethod
    def _ratings_in_range(cls, value: dict[str, int]) -> dict[str, int]:
        for name, score in value.items():
            if not 1 <= int(score) <= 5:
                raise ValueError(f"rating '{name}' must be within 1..5")
        return value
