# attribution/models/api/attribution_request.py
"""
Attribution operation request models.
Validated inputs for the exposed operations.
"""

from typing import Literal

from pydantic import BaseModel, Field

SignalType = Literal["ip", "session", "device", "screen", "webgl", "landing", "source", "hour"]


class ResolveOptions(BaseModel):
    """Options for resolving one conversion."""

    model: Literal["first_touch", "last_touch"] = Field(
        default="first_touch", description="Which eligible touchpoint gets the credit"
    )
    lookback_days: int = Field(
        default=14, ge=1, le=90, description="How far before the conversion visits stay eligible"
    )


class QueryIndexRequest(BaseModel):
    """Request for the visits sharing one signal value."""

    signal_type: SignalType = Field(..., description="Index to read")
    signal_value: str = Field(..., min_length=1, description="Raw (unencoded) signal value")
    limit: int = Field(default=50, ge=1, le=500, description="Maximum visits to return")
