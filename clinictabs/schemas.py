"""Request and response models for the tab configuration API.

Field names are snake_case in Python and camelCase on the wire; both
spellings are accepted on input.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from clinictabs.scopes import TabScope
from clinictabs.time_utils import isoformat_utc

ContentType = Literal["builtin_component", "markdown", "iframe", "query_widget"]

TAB_KEY_PATTERN = r"^[a-z0-9][a-z0-9_-]*$"


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _clean_label(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = " ".join(value.split())
    if not cleaned:
        raise ValueError("label must not be blank")
    return cleaned


def check_content_settings(content_type: Optional[str], settings: Optional[Dict[str, Any]]) -> None:
    """Raise ``ValueError`` when ``settings`` cannot drive ``content_type``."""

    settings = settings or {}
    if content_type == "iframe":
        url = settings.get("url")
        if not isinstance(url, str) or not url.startswith(("https://", "http://")):
            raise ValueError("iframe tabs require settings.url with an http(s) URL")
    elif content_type == "markdown":
        markdown = settings.get("markdown")
        if markdown is not None and not isinstance(markdown, str):
            raise ValueError("settings.markdown must be a string")


class TabConfigOut(ApiModel):
    """A persisted or resolved tab row."""

    id: Optional[int] = None
    key: str
    label: str
    icon: Optional[str] = None
    content_type: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    category: Optional[str] = None
    scope: TabScope
    organization_id: Optional[int] = None
    role_id: Optional[int] = None
    user_id: Optional[int] = None
    is_system_default: bool
    is_mandatory: bool
    is_visible: bool
    display_order: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_serializer("created_at", "updated_at")
    def _timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return isoformat_utc(value)


class TabConfigCreate(ApiModel):
    key: str = Field(..., min_length=1, max_length=64, pattern=TAB_KEY_PATTERN)
    label: str = Field(..., min_length=1, max_length=100)
    icon: Optional[str] = Field(None, max_length=64)
    content_type: ContentType = "markdown"
    settings: Dict[str, Any] = Field(default_factory=dict)
    category: Optional[str] = Field(None, max_length=64)
    scope: TabScope = TabScope.USER
    is_visible: bool = True
    is_mandatory: bool = False
    display_order: int = Field(1000, ge=0)

    @field_validator("label")
    @classmethod
    def _label(cls, value: str) -> str:
        return _clean_label(value)

    @model_validator(mode="after")
    def _validate_content(self) -> "TabConfigCreate":
        check_content_settings(self.content_type, self.settings)
        if self.is_mandatory and not self.is_visible:
            raise ValueError("mandatory tabs must be visible")
        return self


class TabConfigUpdate(ApiModel):
    label: Optional[str] = Field(None, min_length=1, max_length=100)
    icon: Optional[str] = Field(None, max_length=64)
    is_visible: Optional[bool] = None
    settings: Optional[Dict[str, Any]] = None
    category: Optional[str] = Field(None, max_length=64)

    @field_validator("label")
    @classmethod
    def _label(cls, value: Optional[str]) -> Optional[str]:
        return _clean_label(value)


class VisibilityUpdate(ApiModel):
    is_visible: bool
    scope: TabScope = TabScope.USER


class TabOrderItem(ApiModel):
    id: int
    display_order: int = Field(..., ge=0)


class ReorderRequest(ApiModel):
    tabs: List[TabOrderItem]


class ReorderResponse(ApiModel):
    message: str
    count: int


class ResetRequest(ApiModel):
    scope: TabScope = TabScope.USER


class ResetResponse(ApiModel):
    message: str
    scope: TabScope
    deleted_count: int


class MessageResponse(ApiModel):
    message: str


class SeedResponse(ApiModel):
    message: str
    count: int
    presets: int = 0


class PresetTabEntry(ApiModel):
    key: str
    is_visible: bool = True
    display_order: Optional[int] = None


class PresetOut(ApiModel):
    id: int
    name: str
    description: Optional[str] = None
    scope: str
    organization_id: Optional[int] = None
    is_default: bool
    tabs: List[PresetTabEntry]


class PresetDiff(ApiModel):
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    modified: List[str] = Field(default_factory=list)


class PresetPreview(ApiModel):
    preset: PresetOut
    target_scope: TabScope
    current: List[TabConfigOut]
    preview: List[TabConfigOut]
    diff: PresetDiff


class PresetApplyRequest(ApiModel):
    target_scope: TabScope = TabScope.USER


class PresetApplyResponse(ApiModel):
    preset: str
    target_scope: TabScope
    written: int
    tabs: List[TabConfigOut]


__all__ = [
    "ContentType",
    "check_content_settings",
    "TabConfigOut",
    "TabConfigCreate",
    "TabConfigUpdate",
    "VisibilityUpdate",
    "TabOrderItem",
    "ReorderRequest",
    "ReorderResponse",
    "ResetRequest",
    "ResetResponse",
    "MessageResponse",
    "SeedResponse",
    "PresetTabEntry",
    "PresetOut",
    "PresetDiff",
    "PresetPreview",
    "PresetApplyRequest",
    "PresetApplyResponse",
]
