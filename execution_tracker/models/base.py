"""Base model configuration for inbound payloads."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Base model for payloads received from external channels.

    Payloads are immutable once validated and use the camelCase keys the
    producers send, while still accepting snake_case field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")
