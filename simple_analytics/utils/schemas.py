"""Analytics event schemas — shared by the buffer, submitter and persistence layers."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def local_now() -> datetime:
    """Current time as an aware datetime in the local time zone."""
    return datetime.now().astimezone()


class EventRecord(BaseModel):
    """One recorded event plus the metadata captured when it was recorded.

    Two records are equal when their event name and timestamp match; the
    remaining fields are ignored so that records restored from disk can be
    matched against the ones still held in memory.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_name: str = Field(alias="eventName")
    timestamp: datetime = Field(default_factory=local_now)
    event_details: Optional[dict[str, str]] = Field(default=None, alias="eventDetails")
    session_id: str = Field(alias="sessionID", min_length=1)
    device_id: str = Field(alias="deviceID")
    app_name: str = Field(alias="appName")
    app_version: str = Field(alias="appVersion")
    platform: str
    system_version: str = Field(alias="systemVersion")
    user_props: dict[str, str] = Field(default_factory=dict, alias="userProps")

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_local_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.astimezone()
        return v

    @field_serializer("timestamp")
    def serialize_timestamp(self, v: datetime) -> str:
        return v.isoformat()

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.event_name, self.timestamp)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EventRecord):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_json(cls, value: bytes | str) -> "EventRecord":
        return cls.model_validate_json(value)


class AppMetadata(BaseModel):
    """Process-lifetime enrichment values stamped onto every record.

    Shared by reference between the buffer engine and the HTTP submitter, so
    a platform or version override is seen by both.
    """

    model_config = ConfigDict(validate_assignment=True)

    device_id: str
    app_name: str
    app_version: str
    platform: str
    system_version: str


class SubmissionPayload(BaseModel):
    device_id: str
    app_name: str
    app_version: str
    system_version: str
    platform: str
    items: list[EventRecord]

    @classmethod
    def for_batch(cls, metadata: AppMetadata, items: list[EventRecord]) -> "SubmissionPayload":
        return cls(
            device_id=metadata.device_id,
            app_name=metadata.app_name,
            app_version=metadata.app_version,
            system_version=metadata.system_version,
            platform=metadata.platform,
            items=items,
        )

    def to_request_body(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


class SubmissionResponse(BaseModel):
    message: str


class PersistenceModel(BaseModel):
    items: list[EventRecord] = Field(default_factory=list)

    def to_blob(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_blob(cls, blob: bytes | str) -> "PersistenceModel":
        return cls.model_validate_json(blob)
