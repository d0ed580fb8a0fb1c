"""Shared pydantic building blocks for stored documents."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from spark.utils.timeutils import ensure_utc, format_ts

Timestamp = Annotated[
    datetime,
    AfterValidator(ensure_utc),
    PlainSerializer(format_ts, return_type=str),
]


class DocumentModel(BaseModel):
    """Base for entities persisted in the document store.

    Attributes are snake_case in Python and camelCase in stored documents,
    which is the shape the mobile clients read.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: dict[str, Any]):
        return cls.model_validate(data)


class ApiModel(BaseModel):
    """Request and response bodies: camelCase on the wire, like stored documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
