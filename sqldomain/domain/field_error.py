from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from sqldomain.common import utcnow

# Messages used by the SQL layer
CONTENT_TRUNCATED_IN_DATABASE = "CONTENT_TRUNCATED_IN_DATABASE"
NOT_NULL_CONSTRAINT_VIOLATION = "NOT_NULL_CONSTRAINT_VIOLATION"
UNIQUE_CONSTRAINT_VIOLATION = "UNIQUE_CONSTRAINT_VIOLATION"
COLUMN_SIZE_VIOLATION = "COLUMN_SIZE_VIOLATION"
COLUMN_UPDATE_FAILED = "COLUMN_UPDATE_FAILED"
REFERENCED_OBJECT_NOT_SAVED = "REFERENCED_OBJECT_NOT_SAVED"
UNRESOLVED_REFERENCE = "UNRESOLVED_REFERENCE"


class FieldError(BaseModel):
    """Error or warning attached to one field of a domain object."""
    is_critical: bool
    field_name: str
    message: str
    invalid_content: Optional[Any] = None
    generated: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def __str__(self) -> str:
        kind = "ERROR" if self.is_critical else "WARNING"
        return f"{kind} on {self.field_name}: {self.message}"
