"""
tokenpulse - Usage API Wire Models

Pydantic models for the OpenAI organization usage endpoint. Anything the
models reject is a contract violation and surfaces as MalformedResponseError.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.models import UsageBucket


class UsageResult(BaseModel):
    """One per-model breakdown row inside a bucket."""
    object: str = "organization.usage.completions.result"
    input_tokens: int = Field(..., ge=0)
    output_tokens: int = Field(..., ge=0)
    model: Optional[str] = None
    num_model_requests: Optional[int] = None

    model_config = ConfigDict(extra="allow")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class RemoteBucket(BaseModel):
    """Fixed-width time bucket as returned by the upstream."""
    object: str = "bucket"
    start_time: int
    end_time: int
    results: List[UsageResult] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def check_window(self) -> "RemoteBucket":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def normalize(self) -> UsageBucket:
        """Collapse the per-model rows into a single token count."""
        return UsageBucket(
            start_time=self.start_time,
            end_time=self.end_time,
            token_count=sum(result.total_tokens for result in self.results),
        )


class UsagePage(BaseModel):
    """One page of a paginated usage response."""
    object: str = "page"
    data: List[RemoteBucket]
    has_more: Optional[bool] = None
    next_page: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @property
    def next_cursor(self) -> Optional[str]:
        """Cursor for the following page, or None when this is the last one."""
        if self.has_more and self.next_page:
            return self.next_page
        return None
