"""Interview metadata models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class Interview(BaseModel):
    """An interview record.

    Records on disk identify themselves with ``_id`` or ``id``; both are
    normalized to ``id``. Any other fields are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    participant_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def normalize_id(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_id = data.pop("_id", None)
        if raw_id is not None:
            data["id"] = raw_id
        if data.get("id") is not None:
            data["id"] = str(data["id"])
        return data


class InterviewSummary(BaseModel):
    """Listing entry for an interview."""

    id: str
    participant_id: str | None = None
