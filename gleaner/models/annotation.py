"""
Annotation model for Gleaner.

This module defines the internal representation of a remotely stored
annotation. Every remote client converts its payloads into this format.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator


UNTITLED = "Untitled document"


def as_utc(value: datetime) -> datetime:
    """Normalize to UTC; naive datetimes are taken as UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def base_uri_of(uri: str) -> str:
    """Scheme and host of a URI, or the URI itself when it has neither."""
    parsed = urlparse(uri)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return uri


class Annotation(BaseModel):
    """
    A highlight or comment stored by the annotation service.

    The id is assigned remotely and never changes.
    """

    id: str = Field(
        ...,
        description="Remote-assigned unique identifier"
    )

    created: datetime = Field(
        ...,
        description="When the annotation was created"
    )

    updated: datetime = Field(
        ...,
        description="When the annotation was last updated"
    )

    uri: str = Field(
        default="",
        description="Address of the annotated document"
    )

    title: Optional[str] = Field(
        default=None,
        description="Title of the annotated document"
    )

    text: str = Field(
        default="",
        description="Body of the annotation"
    )

    highlight: List[str] = Field(
        default_factory=list,
        description="Quoted lines highlighted in the document"
    )

    user: str = Field(
        default="",
        description="Account that wrote the annotation"
    )

    display_name: Optional[str] = Field(
        default=None,
        description="Display name of the author"
    )

    group: str = Field(
        default="",
        description="ID of the group the annotation belongs to"
    )

    group_name: str = Field(
        default="",
        description="Name of the group the annotation belongs to"
    )

    references: List[str] = Field(
        default_factory=list,
        description="Parent annotation ids, oldest first"
    )

    tags: List[str] = Field(
        default_factory=list,
        description="User-assigned labels, in display order"
    )

    incontext: Optional[str] = Field(
        default=None,
        description="Link showing the annotation in its document"
    )

    @field_validator("created", "updated")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("tags")
    @classmethod
    def _collapse_duplicate_tags(cls, tags: List[str]) -> List[str]:
        seen = set()
        unique = []
        for tag in tags:
            if tag not in seen:
                seen.add(tag)
                unique.append(tag)
        return unique

    @model_validator(mode="after")
    def _updated_after_created(self) -> "Annotation":
        if self.updated < self.created:
            raise ValueError(f"Annotation {self.id} was updated before it was created")
        return self

    @property
    def base_uri(self) -> str:
        return base_uri_of(self.uri)

    @property
    def quote(self) -> str:
        return "\n".join(self.highlight)

    @property
    def is_page_note(self) -> bool:
        return not self.highlight

    @property
    def display_title(self) -> str:
        return self.title or UNTITLED

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "Annotation":
        """
        Build an annotation from an annotation service JSON payload.

        Args:
            payload: One row of a search response or a single annotation

        Returns:
            The parsed annotation
        """
        highlight = []
        for target in payload.get("target") or []:
            for selector in target.get("selector") or []:
                if selector.get("type") == "TextQuoteSelector" and selector.get("exact"):
                    highlight.append(selector["exact"])

        title = None
        document = payload.get("document") or {}
        titles = document.get("title") or []
        if titles and titles[0]:
            title = titles[0]

        user_info = payload.get("user_info") or {}
        links = payload.get("links") or {}

        return cls(
            id=payload["id"],
            created=payload["created"],
            updated=payload["updated"],
            uri=payload.get("uri", ""),
            title=title,
            text=payload.get("text") or "",
            highlight=highlight,
            user=payload.get("user", ""),
            display_name=user_info.get("display_name"),
            group=payload.get("group", ""),
            group_name=payload.get("group_name", ""),
            references=payload.get("references") or [],
            tags=payload.get("tags") or [],
            incontext=links.get("incontext"),
        )

    def template_context(self) -> Dict[str, Any]:
        """Flatten the annotation, including derived fields, for templates."""
        context = self.model_dump()
        context.update(
            base_uri=self.base_uri,
            quote=self.quote,
            is_page_note=self.is_page_note,
            title=self.display_title,
            incontext=self.incontext or self.uri,
            display_name=self.display_name or self.user,
        )
        return context
