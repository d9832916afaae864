"""Shared response schemas."""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }
