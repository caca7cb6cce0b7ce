"""
Shared pydantic bases.

Responses built from ORM rows (batches, invoices) inherit BaseResponseSchema;
request bodies inherit BaseCreateSchema.
"""

from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """Read from ORM attributes; ids and timestamps render as strings."""
    model_config = ConfigDict(
        from_attributes=True,
        json_encoders={
            UUID: str,
            datetime: lambda v: v.isoformat() if v else None,
        },
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """Request body; fields the service does not know are dropped."""
    model_config = ConfigDict(extra='ignore')
