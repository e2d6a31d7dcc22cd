from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventSubmission(BaseModel):
    """Event posted by a recorder plugin.

    Required fields are checked by the dedup gate rather than here so that
    alternate producer spellings (``radioID``, ``systemShortName``) pass
    through as extra fields and are normalized in one place.
    """

    system: str | None = Field(None, max_length=100)
    radioId: str | int | None = None
    talkgroupOrSource: str | int | None = None
    eventType: str | None = Field(None, max_length=50)
    patchedTalkgroups: list[str | int] | str | None = None
    model_config = ConfigDict(extra="allow")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SubmitResponse(BaseModel):
    status: Literal["success", "skipped"]
    message: str


class TalkgroupUpdateRequest(BaseModel):
    alphaTag: str | None = Field(None, max_length=200)
    hex: str | None = Field(None, max_length=20)
    mode: str | None = Field(None, max_length=20)
    description: str | None = Field(None, max_length=500)
    tag: str | None = Field(None, max_length=100)
    category: str | None = Field(None, max_length=100)
    # Owning system; omitted means "where the talkgroup already lives"
    shortName: str | None = Field(None, max_length=100)


class TalkgroupModel(BaseModel):
    decimal: str
    hex: str
    alphaTag: str
    mode: str
    description: str
    tag: str
    category: str
    shortName: str | None = None
    unknown: bool = False


class TalkgroupUpdateResponse(BaseModel):
    status: str
    message: str
    talkgroup: TalkgroupModel


class SystemModel(BaseModel):
    shortName: str
    displayName: str


class AliasModel(BaseModel):
    shortName: str
    alias: str


class AliasUpdateRequest(BaseModel):
    alias: str | None = Field(None, max_length=200)


class ConfigResponse(BaseModel):
    systemFilters: list[SystemModel]


class StatusResponse(BaseModel):
    status: str
    message: str
