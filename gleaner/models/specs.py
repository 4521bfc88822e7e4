"""
Specification models for Gleaner.

FilterSpec selects annotations, HierarchySpec decides how they are grouped
into folders and pages, SortSpec orders them within a page. All three are
immutable and validated before any I/O happens.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidSpec
from .annotation import as_utc


class OrderBy(str, Enum):
    """Keys usable for grouping and sorting annotations."""

    TAG = "Tag"
    URI = "URI"
    BASE_URI = "BaseURI"
    TITLE = "Title"
    ID = "ID"
    GROUP = "Group"
    GROUP_NAME = "GroupName"
    CREATED = "Created"
    UPDATED = "Updated"

    @classmethod
    def parse(cls, name: Any) -> "OrderBy":
        """Look up a key by name, ignoring case."""
        if isinstance(name, cls):
            return name
        for member in cls:
            if str(name).lower() in (member.value.lower(), member.name.lower()):
                return member
        raise InvalidSpec(
            f"Unknown key {name!r}, expected one of {[m.value for m in cls]}",
            {"key": name},
        )


HIERARCHY_KEYS = frozenset(OrderBy) - {OrderBy.CREATED, OrderBy.UPDATED}


class TagMode(str, Enum):
    """How required tags combine."""

    ALL = "all"
    ANY = "any"


def _build(model: type, **kwargs: Any) -> Any:
    """Construct a spec model, turning validation failures into InvalidSpec."""
    try:
        return model(**kwargs)
    except ValidationError as e:
        raise InvalidSpec(f"Invalid {model.__name__}: {e}") from e


class FilterSpec(BaseModel):
    """
    Declarative predicate over an annotation and its tags.

    Every predicate is optional; a spec without predicates matches everything.
    """

    model_config = ConfigDict(frozen=True)

    from_date: Optional[datetime] = Field(
        default=None,
        description="Inclusive lower bound of the time window"
    )

    before: Optional[datetime] = Field(
        default=None,
        description="Exclusive upper bound of the time window"
    )

    include_updated: bool = Field(
        default=False,
        description="Apply the time window to updated instead of created"
    )

    uri: str = ""
    quote: str = ""
    text: str = ""
    any: str = Field(
        default="",
        description="Substring searched in quote, text, uri and tags"
    )

    tags: Tuple[str, ...] = ()
    tag_mode: TagMode = TagMode.ALL
    exclude_tags: Tuple[str, ...] = ()

    page_only: bool = False
    annotation_only: bool = False

    groups: Tuple[str, ...] = Field(
        default=(),
        description="Allowed group ids; empty allows every group"
    )

    negate: bool = Field(
        default=False,
        description="Invert the composed predicate"
    )

    @field_validator("from_date", "before")
    @classmethod
    def _timezone_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _consistent(self) -> "FilterSpec":
        if self.page_only and self.annotation_only:
            raise ValueError("page_only and annotation_only are mutually exclusive")
        if self.from_date and self.before and self.from_date >= self.before:
            raise ValueError("from_date must be earlier than before")
        return self

    @classmethod
    def create(cls, **kwargs: Any) -> "FilterSpec":
        """Build a FilterSpec, raising InvalidSpec on bad input."""
        return _build(cls, **kwargs)

    def with_excluded(self, *tags: str) -> "FilterSpec":
        """Copy of this spec that also excludes the given tags."""
        return self.model_copy(update={"exclude_tags": self.exclude_tags + tuple(tags)})


class HierarchySpec(BaseModel):
    """
    Ordered grouping levels.

    The last level names pages; every preceding level names a folder.
    """

    model_config = ConfigDict(frozen=True)

    levels: Tuple[OrderBy, ...] = ()
    nested_delimiter: Optional[str] = Field(
        default=None,
        description="Split tag values into nested folders on this string"
    )

    @model_validator(mode="after")
    def _groupable(self) -> "HierarchySpec":
        bad = [level.value for level in self.levels if level not in HIERARCHY_KEYS]
        if bad:
            raise ValueError(f"{bad} cannot be used as hierarchy levels")
        if self.nested_delimiter == "":
            raise ValueError("nested_delimiter cannot be empty")
        return self

    @classmethod
    def from_names(cls, names: Iterable[Any], nested_delimiter: Optional[str] = None) -> "HierarchySpec":
        """Build a HierarchySpec from key names such as ["Tag", "Title"]."""
        levels = tuple(OrderBy.parse(name) for name in names)
        return _build(cls, levels=levels, nested_delimiter=nested_delimiter)


class SortSpec(BaseModel):
    """Composite sort order applied within each page."""

    model_config = ConfigDict(frozen=True)

    keys: Tuple[OrderBy, ...] = (OrderBy.CREATED,)

    @classmethod
    def from_names(cls, names: Iterable[Any]) -> "SortSpec":
        """Build a SortSpec from key names such as ["Title", "Created"]."""
        return _build(cls, keys=tuple(OrderBy.parse(name) for name in names))
