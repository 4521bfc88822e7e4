"""
Filter engine for Gleaner.

Evaluates a FilterSpec against an annotation and its tag set. Evaluation is
pure and independent of storage.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Set

from .database import DatabaseManager, TagIndex, EMPTY_TAG
from .errors import InvalidSpec
from .models import Annotation, FilterSpec, TagMode


def parse_datetime(value: str) -> datetime:
    """
    Parse a date given on the command line.

    Accepts ISO 8601 dates and datetimes, and "today" for midnight UTC.
    Naive values are taken as UTC.
    """
    if value.strip().lower() == "today":
        now = datetime.now(timezone.utc)
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as e:
        raise InvalidSpec(f"Couldn't parse date {value!r}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _in_window(annotation: Annotation, spec: FilterSpec) -> bool:
    moment = annotation.updated if spec.include_updated else annotation.created
    if spec.from_date is not None and moment < spec.from_date:
        return False
    if spec.before is not None and moment >= spec.before:
        return False
    return True


def _tags_match(tags: Set[str], spec: FilterSpec) -> bool:
    if spec.tags:
        if spec.tag_mode == TagMode.ALL:
            if not all(tag in tags for tag in spec.tags):
                return False
        elif not any(tag in tags for tag in spec.tags):
            return False
    return not any(tag in tags for tag in spec.exclude_tags)


def _any_match(annotation: Annotation, tags: Set[str], pattern: str) -> bool:
    if pattern in annotation.quote or pattern in annotation.text or pattern in annotation.uri:
        return True
    return any(pattern in tag for tag in tags)


def _predicates_hold(annotation: Annotation, tags: Set[str], spec: FilterSpec) -> bool:
    if spec.page_only and not annotation.is_page_note:
        return False
    if spec.annotation_only and annotation.is_page_note:
        return False
    if spec.groups and annotation.group not in spec.groups:
        return False
    if not _in_window(annotation, spec):
        return False
    if spec.uri and spec.uri not in annotation.uri:
        return False
    if not _tags_match(tags, spec):
        return False
    if spec.quote and spec.quote not in annotation.quote:
        return False
    if spec.text and spec.text not in annotation.text:
        return False
    if spec.any and not _any_match(annotation, tags, spec.any):
        return False
    return True


def matches(annotation: Annotation, tags: Iterable[str], spec: FilterSpec) -> bool:
    """
    Check whether an annotation satisfies a filter.

    Args:
        annotation: The annotation to test
        tags: Its tag set (the reserved empty tag is ignored)
        spec: The filter

    Returns:
        The AND of every predicate present in spec, inverted when spec.negate
    """
    tag_set = set(tags) - {EMPTY_TAG}
    result = _predicates_hold(annotation, tag_set, spec)
    return not result if spec.negate else result


def select(annotations: Iterable[Annotation], spec: FilterSpec) -> List[Annotation]:
    """Filter annotations using their own tag lists."""
    return [annotation for annotation in annotations if matches(annotation, annotation.tags, spec)]


def select_indexed(db: DatabaseManager, index: TagIndex, spec: FilterSpec) -> List[Annotation]:
    """
    Filter the local mirror, taking tags from the tag index.

    Returns:
        Matching annotations ordered by creation time, then ID
    """
    selected = []
    for annotation in db.list_annotations():
        if matches(annotation, index.get_tags(annotation.id), spec):
            selected.append(annotation)
    return selected
