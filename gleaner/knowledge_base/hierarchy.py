"""
Hierarchy engine for Gleaner.

Turns a filtered set of annotations into a tree of folders and pages. Every
hierarchy level except the last names a folder, the last level names the page.
Within a page, annotations follow the composite sort order. Paths are made
filesystem safe, and distinct keys that would share a file name are reported
and given a short hash suffix.
"""

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..errors import FilenameCollision
from ..models import Annotation, HierarchySpec, OrderBy, SortSpec


# Bucket for annotations that have no value for a level (e.g. no tags).
# The raw key is empty so that a real tag named "untagged" stays separate;
# the display name is only used when naming the file.
UNTAGGED = "untagged"
_UNTAGGED_KEY = ""

# Joins multi-valued keys (tags) before comparison.
SORT_SEPARATOR = ","

DEFAULT_MAX_FILENAME_LENGTH = 150

_ILLEGAL_CHARACTERS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_RESERVED_NAMES = re.compile(r"^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$", re.IGNORECASE)
_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def clean_uri(uri: str) -> str:
    """URI without its scheme or trailing slash."""
    return _SCHEME.sub("", uri).rstrip("/")


def _truncate_utf8(name: str, max_bytes: int) -> str:
    encoded = name.encode("utf-8")
    if len(encoded) <= max_bytes:
        return name
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def sanitize_segment(raw: str, max_length: int = DEFAULT_MAX_FILENAME_LENGTH) -> str:
    """
    Make one path segment safe to use as a file or folder name.

    Removes characters that are illegal on common filesystems, avoids
    reserved device names and dot-only names, and truncates to max_length
    bytes of UTF-8.
    """
    name = unicodedata.normalize("NFC", raw)
    name = _ILLEGAL_CHARACTERS.sub("", name)
    name = name.strip().rstrip(". ")
    if not name or set(name) == {"."}:
        name = "_"
    if _RESERVED_NAMES.match(name):
        name = f"_{name}"
    return _truncate_utf8(name, max_length).rstrip(". ") or "_"


def _short_hash(raw: str, length: int = 8) -> str:
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:length]


@dataclass
class Page:
    """A terminal grouping: one output file listing annotations in order."""

    name: str
    path: PurePosixPath
    annotations: List[Annotation] = field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [annotation.id for annotation in self.annotations]


@dataclass
class Link:
    """Entry of a folder index: a page, or a subfolder's index file."""

    name: str
    path: PurePosixPath
    is_folder: bool = False


@dataclass
class Folder:
    """A non-terminal grouping; the root folder has an empty path."""

    name: str
    path: PurePosixPath
    index_path: PurePosixPath
    folders: List["Folder"] = field(default_factory=list)
    pages: List[Page] = field(default_factory=list)

    def links(self) -> List[Link]:
        """Immediate children ordered by name, pages before folders of the same name."""
        entries: List[Tuple[str, int, Link]] = []
        for page in self.pages:
            entries.append((page.name, 0, Link(page.name, page.path)))
        for folder in self.folders:
            entries.append((folder.name, 1, Link(folder.name, folder.index_path, is_folder=True)))
        entries.sort(key=lambda entry: (entry[0], entry[1], str(entry[2].path)))
        return [link for _, _, link in entries]

    def walk(self) -> Iterator["Folder"]:
        """This folder and every folder below it, depth first."""
        yield self
        for folder in self.folders:
            yield from folder.walk()


@dataclass
class KnowledgeBaseTree:
    """Output of the hierarchy engine."""

    root: Folder
    root_page: Optional[Page] = None
    collisions: List[FilenameCollision] = field(default_factory=list)

    @property
    def pages(self) -> List[Page]:
        """Every page, ordered by path."""
        pages = [page for folder in self.root.walk() for page in folder.pages]
        if self.root_page is not None:
            pages.append(self.root_page)
        return sorted(pages, key=lambda page: str(page.path))

    @property
    def folders(self) -> List[Folder]:
        return list(self.root.walk())

    def page(self, path: str) -> Page:
        """Look up a page by its relative path."""
        for page in self.pages:
            if str(page.path) == path:
                return page
        raise KeyError(path)


class _Node:
    """Raw tree keyed by unsanitized key values."""

    def __init__(self):
        self.folders: Dict[str, "_Node"] = {}
        self.pages: Dict[str, Dict[str, Annotation]] = {}

    def folder(self, chain: Iterable[str]) -> "_Node":
        node = self
        for segment in chain:
            node = node.folders.setdefault(segment, _Node())
        return node


class HierarchyEngine:
    """
    Builds the folder/page tree for a set of annotations.

    Building is deterministic: the same annotations and specs always give the
    same tree, paths and order.
    """

    def __init__(self, hierarchy: HierarchySpec, sort: Optional[SortSpec] = None,
                 extension: str = "md", index_name: str = "_index",
                 max_filename_length: int = DEFAULT_MAX_FILENAME_LENGTH,
                 strict: bool = False):
        """
        Initialize the hierarchy engine.

        Args:
            hierarchy: Grouping levels
            sort: Order within pages (defaults to creation time)
            extension: File extension for pages, without the dot
            index_name: File stem of each folder's index page
            max_filename_length: Maximum bytes per path segment
            strict: Raise on the first file name collision instead of
                disambiguating
        """
        self.hierarchy = hierarchy
        self.sort = sort or SortSpec()
        self.extension = extension.lstrip(".")
        self.index_name = index_name
        self.max_filename_length = max_filename_length
        self.strict = strict

    # Keys

    def key_chains(self, annotation: Annotation, level: OrderBy) -> List[Tuple[str, ...]]:
        """
        Values of one hierarchy level for an annotation.

        Each value is a chain of raw path segments; only nested tags give
        chains longer than one. Tags give one chain per tag.
        """
        if level == OrderBy.TAG:
            chains = []
            for tag in annotation.tags:
                if self.hierarchy.nested_delimiter:
                    chain = tuple(part for part in tag.split(self.hierarchy.nested_delimiter) if part.strip())
                else:
                    chain = (tag,) if tag.strip() else ()
                if chain and chain not in chains:
                    chains.append(chain)
            return chains or [(_UNTAGGED_KEY,)]

        if level == OrderBy.URI:
            value = clean_uri(annotation.uri).replace("/", "_")
        elif level == OrderBy.BASE_URI:
            value = clean_uri(annotation.base_uri).replace("/", "_")
        elif level == OrderBy.TITLE:
            value = annotation.display_title
        elif level == OrderBy.ID:
            value = annotation.id
        elif level == OrderBy.GROUP:
            value = annotation.group
        elif level == OrderBy.GROUP_NAME:
            value = annotation.group_name
        else:
            raise ValueError(f"{level.value} cannot be a hierarchy level")
        return [(value,)] if value else [(_UNTAGGED_KEY,)]

    def sort_key(self, annotation: Annotation) -> Tuple[Any, ...]:
        """Composite sort key; the ID comes last so the order is total."""
        values: List[Any] = []
        for key in self.sort.keys:
            if key == OrderBy.TAG:
                values.append(SORT_SEPARATOR.join(annotation.tags))
            elif key == OrderBy.URI:
                values.append(clean_uri(annotation.uri))
            elif key == OrderBy.BASE_URI:
                values.append(clean_uri(annotation.base_uri))
            elif key == OrderBy.TITLE:
                values.append(annotation.display_title)
            elif key == OrderBy.ID:
                values.append(annotation.id)
            elif key == OrderBy.GROUP:
                values.append(annotation.group)
            elif key == OrderBy.GROUP_NAME:
                values.append(annotation.group_name)
            elif key == OrderBy.CREATED:
                values.append(annotation.created)
            elif key == OrderBy.UPDATED:
                values.append(annotation.updated)
        values.append(annotation.id)
        return tuple(values)

    def sort_annotations(self, annotations: Iterable[Annotation]) -> List[Annotation]:
        return sorted(annotations, key=self.sort_key)

    # Tree

    def _paths(self, annotation: Annotation) -> List[Tuple[Tuple[str, ...], str]]:
        """Every (folder chain, page name) an annotation belongs to."""
        partial_paths: List[Tuple[str, ...]] = [()]
        for level in self.hierarchy.levels:
            chains = self.key_chains(annotation, level)
            partial_paths = [prefix + chain for prefix in partial_paths for chain in chains]
        results = []
        for full in partial_paths:
            entry = (full[:-1], full[-1])
            if entry not in results:
                results.append(entry)
        return results

    def _page_file(self, stem: str) -> str:
        return f"{stem}.{self.extension}" if self.extension else stem

    @staticmethod
    def _display_name(raw: str) -> str:
        return UNTAGGED if raw == _UNTAGGED_KEY else raw

    def _assign_names(self, folder_path: PurePosixPath, raw_names: List[str],
                      taken: Dict[str, str], collisions: List[FilenameCollision],
                      as_page: bool) -> Dict[str, str]:
        """
        Map raw names in one folder to unique on-disk names.

        `taken` maps every name already used in the folder (the index file,
        pages and subfolders) to the key that claimed it, and is updated in
        place. Raw names are processed in sorted order; the first to claim a
        name keeps it, later ones get a hash suffix.
        """
        assigned: Dict[str, str] = {}
        suffix_room = len(self.extension) + 1 if as_page and self.extension else 0
        limit = max(self.max_filename_length - suffix_room, 16)

        def on_disk(stem: str) -> str:
            return self._page_file(stem) if as_page else stem

        for raw in sorted(raw_names):
            key = f"<{UNTAGGED}>" if raw == _UNTAGGED_KEY else raw
            if not as_page:
                key = f"{key}/"
            stem = sanitize_segment(self._display_name(raw), limit)
            if on_disk(stem) in taken:
                shown = folder_path / on_disk(stem)
                collision = FilenameCollision(str(shown), [taken[on_disk(stem)], key])
                if self.strict:
                    raise collision
                logging.warning(f"File name collision: {collision.message}")
                collisions.append(collision)
                length = 8
                candidate = stem
                while on_disk(candidate) in taken:
                    digest = _short_hash(key, length)
                    candidate = f"{_truncate_utf8(stem, limit - len(digest) - 1)}-{digest}"
                    length += 4
                stem = candidate
            taken[on_disk(stem)] = key
            assigned[raw] = on_disk(stem)
        return assigned

    def _materialize(self, node: _Node, name: str, path: PurePosixPath,
                     collisions: List[FilenameCollision]) -> Folder:
        index_file = self._page_file(self.index_name)
        folder = Folder(
            name=name,
            path=path,
            index_path=path / index_file
        )

        # Pages and subfolders share one namespace with the index file
        taken = {index_file: f"<{self.index_name}>"}
        page_names = self._assign_names(path, list(node.pages), taken, collisions, as_page=True)
        folder_names = self._assign_names(path, list(node.folders), taken, collisions, as_page=False)

        for raw in sorted(node.pages):
            annotations = self.sort_annotations(node.pages[raw].values())
            folder.pages.append(Page(
                name=self._display_name(raw),
                path=path / page_names[raw],
                annotations=annotations
            ))
        for raw in sorted(node.folders):
            folder.folders.append(self._materialize(
                node.folders[raw], self._display_name(raw), path / folder_names[raw], collisions
            ))
        return folder

    def build(self, annotations: Iterable[Annotation]) -> KnowledgeBaseTree:
        """
        Group, order and name annotations.

        Args:
            annotations: Filtered annotations; repeated IDs are kept once

        Returns:
            The folder/page tree with any file name collisions that were
            disambiguated
        """
        unique: Dict[str, Annotation] = {}
        for annotation in annotations:
            unique.setdefault(annotation.id, annotation)

        root_path = PurePosixPath(".")
        if not self.hierarchy.levels:
            root = Folder(name="", path=root_path,
                          index_path=PurePosixPath(self._page_file(self.index_name)))
            page = Page(
                name=self.index_name,
                path=root.index_path,
                annotations=self.sort_annotations(unique.values())
            )
            return KnowledgeBaseTree(root=root, root_page=page)

        tree = _Node()
        for annotation in unique.values():
            for folder_chain, page_name in self._paths(annotation):
                tree.folder(folder_chain).pages.setdefault(page_name, {})[annotation.id] = annotation

        collisions: List[FilenameCollision] = []
        root = self._materialize(tree, "", root_path, collisions)
        result = KnowledgeBaseTree(root=root, collisions=collisions)
        logging.info(
            f"Built hierarchy with {len(result.pages)} pages from {len(unique)} annotations"
        )
        return result
