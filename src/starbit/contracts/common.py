"""Shared response envelope and field types."""

from datetime import datetime
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from starbit.ledger.models import as_utc

# Datetimes leave the API as UTC even when the database hands back naive values
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ORMModel(BaseModel):
    """Base for responses built from SQLAlchemy rows."""

    model_config = ConfigDict(from_attributes=True)


class Page(BaseModel):
    """Paginated list payload."""

    items: list[Any] = Field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0


class ErrorResponse(BaseModel):
    """Failure envelope returned for every error."""

    success: bool = False
    message: str
    error: Optional[str] = None


def ok(data: Any = None) -> dict:
    """Wrap a payload in the success envelope.

    Models are dumped in JSON mode so decimals travel as exact strings.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"success": True, "data": data}
