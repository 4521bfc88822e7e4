"""
Templates for Gleaner knowledge bases.

Templates use Python format syntax: {text}, {title}, {created:%Y-%m-%d}.
Rendering a template that names a key missing from its context raises
TemplateError naming the key.
"""

import string
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Mapping, Optional

from ..errors import TemplateError
from ..models import Annotation
from .hierarchy import Folder, Link, Page


DEFAULT_ANNOTATION_TEMPLATE = """### {title}

Source: [{uri}]({incontext})
Created: {created:%Y-%m-%d %H:%M} | Updated: {updated:%Y-%m-%d %H:%M}
Tags: {tags_text}

{quote_block}

{text}

---
"""

DEFAULT_PAGE_TEMPLATE = """# {name}

{annotations}
"""

DEFAULT_INDEX_TEMPLATE = """# {name}

{links}
"""

DEFAULT_INDEX_LINK_TEMPLATE = "- [{name}]({path})"

DEFAULT_TEMPLATES: Dict[str, str] = {
    "annotation": DEFAULT_ANNOTATION_TEMPLATE,
    "page": DEFAULT_PAGE_TEMPLATE,
    "index": DEFAULT_INDEX_TEMPLATE,
    "index_link": DEFAULT_INDEX_LINK_TEMPLATE,
}


class _StrictFormatter(string.Formatter):
    """Formatter that reports the name of any missing key."""

    def get_value(self, key, args, kwargs):
        if isinstance(key, int):
            raise TemplateError(f"Template uses positional field {{{key}}}; name the field", str(key))
        if key not in kwargs:
            raise TemplateError(f"Template references unknown key '{key}'", key)
        return kwargs[key]


_formatter = _StrictFormatter()


def render(template: str, context: Mapping[str, Any]) -> str:
    """
    Render a template against a context.

    Args:
        template: Template text in format syntax
        context: Values available to the template

    Returns:
        The rendered text

    Raises:
        TemplateError: If the template references a missing key or is malformed
    """
    try:
        return _formatter.vformat(template, (), context)
    except TemplateError:
        raise
    except (AttributeError, IndexError, TypeError, ValueError) as e:
        raise TemplateError(f"Failed to render template: {e}") from e


def annotation_context(annotation: Annotation) -> Dict[str, Any]:
    """Template values for one annotation."""
    context = annotation.template_context()
    context["tags_text"] = ", ".join(annotation.tags)
    context["quote_block"] = "\n".join(f"> {line}" for line in annotation.quote.splitlines())
    return context


class Templates:
    """
    The template set used to render a knowledge base.

    Overrides from configuration replace individual default templates.
    """

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        self.templates = dict(DEFAULT_TEMPLATES)
        for name, template in (overrides or {}).items():
            if name not in DEFAULT_TEMPLATES:
                raise TemplateError(f"Unknown template '{name}'", name)
            self.templates[name] = template

    def __getitem__(self, name: str) -> str:
        return self.templates[name]

    def annotation(self, annotation: Annotation) -> str:
        return render(self.templates["annotation"], annotation_context(annotation))

    def annotations(self, annotations: Iterable[Annotation]) -> str:
        return "\n".join(self.annotation(annotation) for annotation in annotations)

    def page(self, page: Page) -> str:
        return render(self.templates["page"], {
            "name": page.name,
            "path": str(page.path),
            "count": len(page.annotations),
            "annotations": self.annotations(page.annotations),
        })

    def link(self, link: Link, relative_to: PurePosixPath) -> str:
        return render(self.templates["index_link"], {
            "name": link.name,
            "path": str(link.path.relative_to(relative_to)),
            "is_folder": link.is_folder,
        })

    def index(self, folder: Folder, title: str) -> str:
        """Index page of a folder, linking its immediate children."""
        links = folder.links()
        return render(self.templates["index"], {
            "name": folder.name or title,
            "path": str(folder.index_path),
            "count": len(links),
            "links": "\n".join(self.link(link, folder.path) for link in links),
        })
