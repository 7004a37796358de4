"""Export and import of notes in interchange formats.

All functions here are pure: they take validated entities and return
strings (or, for import, a mapping of note fields). Nothing touches the
store.
"""

import csv
import html
import io
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import bleach

from notekeep.exceptions import ErrorCode, ValidationError
from notekeep.models.schema import Folder, Note, utc_now
from notekeep.utils import format_date, strip_html

logger = logging.getLogger(__name__)

UNTITLED = "Untitled Note"
EXPORT_VERSION = "1.0"

EXPORT_FORMATS = ("json", "markdown", "html", "txt")
COLLECTION_FORMATS = ("json", "markdown")
SEARCH_RESULT_FORMATS = ("json", "csv")
IMPORT_FORMATS = ("json", "markdown")

# Markup allowed through into standalone HTML exports
ALLOWED_TAGS = set(bleach.sanitizer.ALLOWED_TAGS) | {
    "p", "div", "span", "br", "hr", "u", "s", "sub", "sup", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "img", "table", "thead",
    "tbody", "tr", "th", "td",
}
ALLOWED_ATTRIBUTES = {
    **bleach.sanitizer.ALLOWED_ATTRIBUTES,
    "img": ["src", "alt", "title"],
    "span": ["style"],
    "div": ["style"],
}

HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; }}
h1 {{ color: #333; }}
.meta {{ color: #666; font-size: 0.9em; margin-bottom: 20px; }}
.tags {{ margin: 10px 0; }}
.tag {{ background: #e9ecef; padding: 2px 8px; border-radius: 12px; font-size: 0.8em; }}
</style>
</head>
<body>
<h1>{title}</h1>
<div class="meta">Created: {created} | Modified: {modified}</div>
{tags}<div class="content">
{content}
</div>
</body>
</html>
"""

_MARKDOWN_TAGS = re.compile(r"Tags:\s*((?:#\w+\s*)+)")
_HASHTAG = re.compile(r"#(\w+)")


def _normalize_format(fmt: str) -> str:
    return (fmt or "json").strip().lower()


def _title(note: Note) -> str:
    return note.title or UNTITLED


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def note_to_markdown(note: Note, heading: str = "#") -> str:
    """Render one note as Markdown with a tag line and plain-text body."""
    lines = [f"{heading} {_title(note)}", ""]
    if note.tags:
        lines.extend(["Tags: " + " ".join(f"#{tag}" for tag in note.tags), ""])
    lines.append(strip_html(note.content))
    return "\n".join(lines)


def note_to_html(note: Note) -> str:
    """Render one note as a standalone HTML document.

    The title and tags are escaped; the content is sanitized markup.
    """
    title = html.escape(_title(note))
    tags = ""
    if note.tags:
        spans = " ".join(
            f'<span class="tag">#{html.escape(tag)}</span>' for tag in note.tags
        )
        tags = f'<div class="tags">{spans}</div>\n'
    content = bleach.clean(
        note.content, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True
    )
    return HTML_TEMPLATE.format(
        title=title,
        created=format_date(note.created_at),
        modified=format_date(note.modified_at),
        tags=tags,
        content=content,
    )


def note_to_text(note: Note) -> str:
    """Render one note as underlined plain text."""
    title = _title(note)
    parts = [title, "=" * len(title), ""]
    if note.tags:
        parts.extend(["Tags: " + ", ".join(note.tags), ""])
    parts.extend([
        strip_html(note.content),
        "",
        f"Created: {format_date(note.created_at)}",
        f"Modified: {format_date(note.modified_at)}",
    ])
    return "\n".join(parts)


def export_note(note: Note, fmt: str = "json") -> str:
    """Export a single note.

    Args:
        note: A validated note.
        fmt: One of json, markdown, html or txt. Anything else falls back
            to json.
    """
    fmt = _normalize_format(fmt)
    if fmt == "markdown":
        body = note_to_markdown(note)
        return (
            f"{body}\n\n---\nCreated: {format_date(note.created_at)}"
            f"\nModified: {format_date(note.modified_at)}"
        )
    if fmt == "html":
        return note_to_html(note)
    if fmt == "txt":
        return note_to_text(note)
    if fmt != "json":
        logger.warning(f"Unknown export format '{fmt}', using json")
    return _dumps(note.to_record())


def export_collection(
    notes: Iterable[Note],
    folders: Iterable[Folder] = (),
    fmt: str = "json",
    exported_at: Optional[datetime] = None,
) -> str:
    """Export every note (and, for json, every folder) in one document."""
    fmt = _normalize_format(fmt)
    exported_at = exported_at or utc_now()
    notes = list(notes)

    if fmt == "markdown":
        sections = [
            "# My Notes Export",
            "",
            f"Exported on: {format_date(exported_at)}",
            "",
        ]
        for note in notes:
            sections.extend([note_to_markdown(note, heading="##"), "", "---", ""])
        return "\n".join(sections)

    if fmt != "json":
        logger.warning(f"Unknown collection export format '{fmt}', using json")
    return _dumps(
        {
            "notes": [note.to_record() for note in notes],
            "folders": [folder.to_record() for folder in folders],
            "export_date": exported_at.isoformat(),
            "version": EXPORT_VERSION,
        }
    )


def export_search_results(
    notes: Iterable[Note],
    query: str = "",
    filters: Optional[Mapping[str, Any]] = None,
    fmt: str = "json",
    folder_names: Optional[Mapping[str, str]] = None,
    exported_at: Optional[datetime] = None,
) -> str:
    """Export a search result set as json or csv.

    The csv Folder column holds the folder name when folder_names maps it,
    else the raw folder id.
    """
    fmt = _normalize_format(fmt)
    notes = list(notes)
    folder_names = folder_names or {}

    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Title", "Content", "Tags", "Folder", "Created", "Modified"])
        for note in notes:
            writer.writerow([
                note.title,
                strip_html(note.content),
                ", ".join(note.tags),
                folder_names.get(note.folder_id, note.folder_id or ""),
                note.created_at.isoformat(),
                note.modified_at.isoformat(),
            ])
        return buffer.getvalue()

    if fmt != "json":
        logger.warning(f"Unknown search export format '{fmt}', using json")
    return _dumps(
        {
            "query": query,
            "filters": dict(filters or {}),
            "result_count": len(notes),
            "search_date": (exported_at or utc_now()).isoformat(),
            "notes": [note.to_record() for note in notes],
        }
    )


def parse_markdown_note(text: str) -> Dict[str, Any]:
    """Parse a Markdown note: first line is the title, body from line three.

    Newlines in the body become ``<br>`` and a ``Tags: #a #b`` line yields
    the tag list.
    """
    lines = text.split("\n")
    title = re.sub(r"^#\s*", "", lines[0]).strip() if lines else ""
    body = "\n".join(lines[2:]).strip()
    tags: List[str] = []
    match = _MARKDOWN_TAGS.search(body)
    if match:
        tags = _HASHTAG.findall(match.group(1))
    return {"title": title, "content": body.replace("\n", "<br>"), "tags": tags}


def parse_note_import(
    data: Union[str, Mapping[str, Any]], fmt: str = "json"
) -> Dict[str, Any]:
    """Turn imported data into the fields of a new note.

    Only title, content, tags and color are carried over; the importing
    repository assigns a fresh id and timestamps.

    Raises:
        ValidationError: On an unsupported format or unparseable data.
    """
    fmt = _normalize_format(fmt)
    if fmt == "json":
        if isinstance(data, str):
            try:
                parsed = json.loads(data)
            except json.JSONDecodeError as e:
                raise ValidationError(
                    f"Invalid JSON import: {e}", field="data"
                ) from e
        else:
            parsed = data
        if not isinstance(parsed, Mapping):
            raise ValidationError(
                "Imported JSON must be an object",
                field="data",
                value=type(parsed).__name__,
                code=ErrorCode.INVALID_ENTITY_TYPE,
            )
        fields = dict(parsed)
    elif fmt == "markdown":
        if not isinstance(data, str):
            raise ValidationError(
                "Markdown import requires text",
                field="data",
                code=ErrorCode.INVALID_ENTITY_TYPE,
            )
        fields = parse_markdown_note(data)
    else:
        raise ValidationError(
            f"Unsupported import format: {fmt}",
            field="format",
            value=fmt,
            code=ErrorCode.UNSUPPORTED_FORMAT,
        )

    tags = fields.get("tags")
    return {
        "title": fields.get("title") or "Imported Note",
        "content": fields.get("content") or "",
        "tags": list(tags) if isinstance(tags, (list, tuple)) else [],
        "color": fields.get("color") or None,
    }
