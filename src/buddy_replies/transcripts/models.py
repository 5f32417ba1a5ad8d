"""Typed records parsed from line-delimited transcript files."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

Role = Literal["user", "assistant", "other"]

PARAGRAPH_BREAK = "\n\n"


class ContentBlock(BaseModel):
    """One typed block of a message body (text, tool_use, thinking, ...)."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    kind: str = Field(
        default="unknown",
        validation_alias=AliasChoices("type", "kind"),
        description="Block type as written by the assistant.",
    )
    text: str | None = Field(default=None, description="Payload for text blocks.")

    @field_validator("text", mode="before")
    @classmethod
    def _text_must_be_string(cls, value: Any) -> str | None:
        return value if isinstance(value, str) else None

    @property
    def is_text(self) -> bool:
        return self.kind == "text" and bool(self.text and self.text.strip())


class PlainText(BaseModel):
    """Message body stored as a flat string."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["plain"] = "plain"
    text: str = ""

    def text_parts(self) -> list[str]:
        return [self.text] if self.text.strip() else []


class Blocks(BaseModel):
    """Message body stored as an ordered sequence of typed blocks."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["blocks"] = "blocks"
    blocks: tuple[ContentBlock, ...] = ()

    def text_parts(self) -> list[str]:
        return [block.text for block in self.blocks if block.is_text]  # type: ignore[misc]


Content = Annotated[Union[PlainText, Blocks], Field(discriminator="kind")]


def _coerce_role(value: Any) -> Role:
    if isinstance(value, str) and value.strip().lower() in {"user", "assistant"}:
        return value.strip().lower()  # type: ignore[return-value]
    return "other"


def _coerce_content(value: Any) -> Any:
    if isinstance(value, (PlainText, Blocks)):
        return value
    if value is None:
        return {"kind": "plain", "text": ""}
    if isinstance(value, str):
        return {"kind": "plain", "text": value}
    if isinstance(value, dict) and value.get("kind") in {"plain", "blocks"}:
        return value
    if isinstance(value, (list, tuple)):
        blocks: list[dict[str, Any]] = []
        for item in value:
            if isinstance(item, str):
                blocks.append({"type": "text", "text": item})
            elif isinstance(item, dict):
                blocks.append(item)
        return {"kind": "blocks", "blocks": blocks}
    return {"kind": "plain", "text": ""}


class TranscriptEntry(BaseModel):
    """A single record inside a transcript file.

    Accepts the assistant's native record shape (``uuid``/``parentUuid`` with the
    role and content nested under ``message``) as well as a flat
    ``id``/``parentId``/``role``/``content`` shape.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., description="Stable identifier within the transcript.")
    parent_id: str | None = Field(default=None, description="Identifier this record responds to.")
    role: Role = Field(default="other", description="Speaker of the record.")
    timestamp: str | None = Field(default=None, description="Origin-reported time of the record.")
    content: Content = Field(default_factory=PlainText)

    @model_validator(mode="before")
    @classmethod
    def _flatten_record(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        message = data.get("message")
        if not isinstance(message, dict):
            message = {}

        identifier = data.get("uuid", data.get("id"))
        parent = data.get("parentUuid", data.get("parentId", data.get("parent_id")))
        role = message.get("role") or data.get("role") or data.get("type")
        raw_content = message.get("content") if "content" in message else data.get("content")

        return {
            "id": identifier,
            "parent_id": parent if isinstance(parent, str) and parent else None,
            "role": _coerce_role(role),
            "timestamp": data.get("timestamp") if isinstance(data.get("timestamp"), str) else None,
            "content": _coerce_content(raw_content),
        }

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Transcript entry id must not be empty")
        return normalized

    def text_parts(self) -> list[str]:
        return self.content.text_parts()

    @property
    def has_text(self) -> bool:
        return bool(self.text_parts())

    @property
    def text(self) -> str:
        """Renderable text, blocks joined by a paragraph break."""

        return PARAGRAPH_BREAK.join(self.text_parts())

    @property
    def plain_text(self) -> str | None:
        """The flat string body, or ``None`` for block content."""

        if isinstance(self.content, PlainText):
            return self.content.text
        return None


__all__ = [
    "Blocks",
    "Content",
    "ContentBlock",
    "PARAGRAPH_BREAK",
    "PlainText",
    "Role",
    "TranscriptEntry",
]
