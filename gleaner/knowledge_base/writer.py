"""
Knowledge base writer for Gleaner.

Renders a hierarchy tree to files: one file per page plus an index file in
each folder linking its immediate children.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from ..config import GleanerContext
from ..errors import ConfigError, FilenameCollision
from ..models import Annotation
from .hierarchy import HierarchyEngine, KnowledgeBaseTree
from .templates import Templates


@dataclass
class WriteSummary:
    """What a knowledge base build wrote."""

    directory: Path
    pages: List[Path] = field(default_factory=list)
    indexes: List[Path] = field(default_factory=list)
    annotation_count: int = 0
    collisions: List[FilenameCollision] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)


class KnowledgeBaseWriter:
    """
    Writes annotations into a knowledge base directory.
    """

    def __init__(self, context: GleanerContext, directory: Optional[str] = None,
                 templates: Optional[Templates] = None):
        """
        Initialize the writer.

        Args:
            context: Configuration plus validated hierarchy and sort specs
            directory: Output directory (defaults to knowledge_base.directory)
            templates: Template set (defaults to configured overrides)
        """
        config = context.config
        self.context = context
        self.directory = Path(directory or config.kb_directory)
        self.templates = templates or Templates(config.templates)
        self.engine = HierarchyEngine(
            hierarchy=context.hierarchy,
            sort=context.sort,
            extension=config.file_extension,
            index_name=config.index_name,
            max_filename_length=config.max_filename_length
        )

    def clear(self) -> None:
        """Remove the knowledge base directory and everything in it."""
        if not self.directory.exists():
            return
        if not self.directory.is_dir():
            raise ConfigError(f"Knowledge base path {self.directory} is not a directory")
        if self.directory.resolve() in (Path.cwd().resolve(), Path.home().resolve()):
            raise ConfigError(f"Refusing to clear {self.directory}")
        shutil.rmtree(self.directory)
        logging.info(f"Cleared knowledge base directory {self.directory}")

    def build(self, annotations: Iterable[Annotation]) -> KnowledgeBaseTree:
        return self.engine.build(annotations)

    def _write_file(self, relative: Path, content: str) -> Path:
        target = self.directory / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w', encoding='utf-8') as f:
            f.write(content)
        logging.debug(f"Wrote {target}")
        return target

    def write(self, annotations: Iterable[Annotation], clear: bool = False,
              index: bool = True) -> WriteSummary:
        """
        Build the hierarchy and write it to disk.

        Args:
            annotations: Annotations to include
            clear: Empty the directory first
            index: Write folder index files. With an empty hierarchy the
                single root page is written regardless.

        Returns:
            Paths written and collisions that were disambiguated

        Raises:
            TemplateError: If a template references a missing key; no files
                are written in that case
        """
        tree = self.build(annotations)

        # Render everything before touching the filesystem.
        rendered_pages = [(page, self.templates.page(page)) for page in tree.pages]
        rendered_indexes = []
        if index and tree.root_page is None:
            title = self.context.config.index_name
            rendered_indexes = [
                (folder.index_path, self.templates.index(folder, title))
                for folder in tree.folders
            ]

        if clear:
            self.clear()
        self.directory.mkdir(parents=True, exist_ok=True)

        summary = WriteSummary(directory=self.directory, collisions=list(tree.collisions))
        seen = set()
        for page, content in rendered_pages:
            summary.pages.append(self._write_file(Path(page.path), content))
            seen.update(page.ids)
        for path, content in rendered_indexes:
            summary.indexes.append(self._write_file(Path(path), content))
        summary.annotation_count = len(seen)

        logging.info(
            f"Wrote {summary.page_count} pages and {len(summary.indexes)} index files "
            f"to {self.directory}"
        )
        for collision in summary.collisions:
            logging.warning(f"Disambiguated file name: {collision.message}")
        return summary

    def view(self, annotations: Iterable[Annotation]) -> str:
        """Render annotations with the annotation template, in sort order."""
        return self.templates.annotations(self.engine.sort_annotations(annotations))
