"""Advanced search over the notes held by a NoteRepository.

Query syntax:
    word          must appear somewhere in the searchable text
    "two words"   must appear as an exact phrase
    -word         must not appear (also -"two words")

Searchable text is the case-folded concatenation of the title, the
plain-text content and the tags, each of which can be switched off through
the filters. Filters and the query history persist as settings.
"""

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from notekeep.config import NotekeepConfig
from notekeep.config import config as default_config
from notekeep.exceptions import ErrorCode, NotekeepError, ValidationError
from notekeep.models.schema import Note, parse_timestamp
from notekeep.observability import timed_operation
from notekeep.services.export_service import export_search_results
from notekeep.storage.note_repository import NoteRepository
from notekeep.storage.note_store import NoteStore
from notekeep.utils import strip_html

logger = logging.getLogger(__name__)

HISTORY_SETTING = "searchHistory"
FILTERS_SETTING = "searchFilters"

MIN_SUGGESTION_PREFIX = 2
MAX_SUGGESTIONS = 5


@dataclass(frozen=True)
class SearchTerm:
    """One parsed query term.

    Attributes:
        text: Case-folded text to look for, without quotes or leading dash.
        exclude: The note must NOT contain the text.
        phrase: The term was quoted.
    """

    text: str
    exclude: bool = False
    phrase: bool = False


class SearchFilters(BaseModel):
    """Structural filters and field switches applied to every search."""

    folders: List[Optional[str]] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    date_from: Optional[datetime.datetime] = Field(
        default=None, validation_alias=AliasChoices("date_from", "dateFrom")
    )
    date_to: Optional[datetime.datetime] = Field(
        default=None, validation_alias=AliasChoices("date_to", "dateTo")
    )
    include_title: bool = Field(
        default=True, validation_alias=AliasChoices("include_title", "includeTitle")
    )
    include_content: bool = Field(
        default=True,
        validation_alias=AliasChoices("include_content", "includeContent"),
    )
    include_tags: bool = Field(
        default=True, validation_alias=AliasChoices("include_tags", "includeTags")
    )

    model_config = {"extra": "ignore"}

    @field_validator("folders", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, (str, bytes)):
            return [v]
        return list(v)

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _coerce_date(cls, v: Any) -> Optional[datetime.datetime]:
        if v is None or v == "":
            return None
        parsed = parse_timestamp(v)
        if parsed is None:
            raise ValueError(f"Invalid date: {v!r}")
        return parsed


def parse_query(query: Optional[str]) -> List[SearchTerm]:
    """Split a query into terms.

    Whitespace separates terms except inside double quotes. An
    unterminated quote runs to the end of the query. Terms that are empty
    after removing the dash and quotes are dropped.
    """
    raw_terms: List[str] = []
    current: List[str] = []
    in_quotes = False
    for char in query or "":
        if char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char.isspace() and not in_quotes:
            if current:
                raw_terms.append("".join(current))
                current = []
        else:
            current.append(char)
    if current:
        raw_terms.append("".join(current))

    terms = []
    for raw in raw_terms:
        exclude = raw.startswith("-")
        body = raw[1:] if exclude else raw
        phrase = body.startswith('"')
        text = body.replace('"', "").strip().casefold()
        if text:
            terms.append(SearchTerm(text=text, exclude=exclude, phrase=phrase))
    return terms


def searchable_text(note: Note, filters: SearchFilters) -> str:
    """Case-folded text of the note fields enabled in filters."""
    parts = []
    if filters.include_title:
        parts.append(note.title)
    if filters.include_content:
        parts.append(strip_html(note.content))
    if filters.include_tags:
        parts.append(" ".join(note.tags))
    return " ".join(parts).casefold()


def matches_terms(note: Note, terms: Iterable[SearchTerm], filters: SearchFilters) -> bool:
    haystack = searchable_text(note, filters)
    for term in terms:
        if (term.text in haystack) == term.exclude:
            return False
    return True


def matches_filters(note: Note, filters: SearchFilters) -> bool:
    if filters.folders and note.folder_id not in filters.folders:
        return False
    if filters.tags and not set(filters.tags).intersection(note.tags):
        return False
    if filters.date_from and note.modified_at < filters.date_from:
        return False
    if filters.date_to and note.modified_at > filters.date_to:
        return False
    return True


class SearchService:
    """Query parsing, filtering and persisted search state."""

    def __init__(
        self,
        repository: NoteRepository,
        store: Optional[NoteStore] = None,
        config: Optional[NotekeepConfig] = None,
    ):
        self.repository = repository
        self.store = store or repository.store
        self.config = config or default_config
        self.query = ""
        self.filters = SearchFilters()
        self._history: List[str] = []

    async def load(self) -> None:
        """Restore history and filters from the settings collection.

        Unreadable values fall back to defaults with a warning.
        """
        history = await self.store.get_setting(HISTORY_SETTING, [])
        if isinstance(history, list):
            self._history = [
                entry for entry in history if isinstance(entry, str) and entry.strip()
            ][: self.config.search_history_size]
        else:
            logger.warning("Ignoring malformed search history setting")
            self._history = []

        saved = await self.store.get_setting(FILTERS_SETTING)
        if saved is None:
            return
        try:
            self.filters = SearchFilters.model_validate(
                saved if isinstance(saved, dict) else {}
            )
        except PydanticValidationError as e:
            logger.warning(f"Ignoring malformed search filters setting: {e}")
            self.filters = SearchFilters()

    async def _persist(self, key: str, value: Any) -> None:
        try:
            await self.store.put_setting(key, value)
        except NotekeepError as e:
            logger.error(f"Failed to persist {key}: {e}")

    # =========================================================================
    # Query and history
    # =========================================================================

    async def set_query(self, query: str) -> None:
        self.query = query or ""
        await self.add_to_history(self.query)

    async def add_to_history(self, query: str) -> None:
        """Push a query to the front of the history, de-duplicated and bounded."""
        entry = (query or "").strip()
        if not entry:
            return
        history = [item for item in self._history if item != entry]
        history.insert(0, entry)
        self._history = history[: self.config.search_history_size]
        await self._persist(HISTORY_SETTING, self._history)

    def get_search_history(self) -> List[str]:
        return list(self._history)

    async def clear_search_history(self) -> None:
        self._history = []
        await self._persist(HISTORY_SETTING, [])

    # =========================================================================
    # Filters
    # =========================================================================

    def get_filters(self) -> SearchFilters:
        return self.filters.model_copy(deep=True)

    async def set_filters(self, **changes: Any) -> SearchFilters:
        """Merge changes into the current filters and persist them.

        Raises:
            ValidationError: If a change has an invalid value; the current
                filters are left untouched.
        """
        merged = {**self.filters.model_dump(), **changes}
        try:
            self.filters = SearchFilters.model_validate(merged)
        except PydanticValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise ValidationError(
                "Invalid search filters",
                field=errors[0]["field"] if errors else None,
                errors=errors,
            ) from e
        await self._persist(FILTERS_SETTING, self.filters.model_dump(mode="json"))
        return self.get_filters()

    async def clear_filters(self) -> None:
        self.filters = SearchFilters()
        await self._persist(FILTERS_SETTING, self.filters.model_dump(mode="json"))

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: Optional[str] = None,
        filters: Optional[SearchFilters] = None,
        notes: Optional[Iterable[Note]] = None,
    ) -> List[Note]:
        """Run a query against the repository's notes.

        Args:
            query: Query string; defaults to the current query.
            filters: Filters; default to the current filters.
            notes: Notes to search; default to every note in the repository.

        Returns:
            Matching notes in their input order.
        """
        query = self.query if query is None else query
        filters = filters or self.filters
        candidates = list(self.repository.get_all_notes() if notes is None else notes)
        terms = parse_query(query)

        with timed_operation("search", terms=len(terms)) as op:
            results = [
                note for note in candidates
                if matches_terms(note, terms, filters) and matches_filters(note, filters)
            ]
            op["result_count"] = len(results)
        return results

    def generate_suggestions(
        self, query: str, notes: Optional[Iterable[Note]] = None
    ) -> List[str]:
        """Completions for a partial query: title words and ``#tags``."""
        prefix = (query or "").casefold()
        if len(prefix) < MIN_SUGGESTION_PREFIX:
            return []
        suggestions: Dict[str, None] = {}
        for note in self.repository.get_all_notes() if notes is None else notes:
            for word in note.title.casefold().split():
                if word.startswith(prefix) and len(word) > len(prefix):
                    suggestions.setdefault(word)
            for tag in note.tags:
                if tag.casefold().startswith(prefix):
                    suggestions.setdefault(f"#{tag}")
        return list(suggestions)[:MAX_SUGGESTIONS]

    @staticmethod
    def highlight_terms(text: str, query: str) -> str:
        """Wrap every include term of the query in ``<mark>`` tags."""
        if not text or not query:
            return text
        words = sorted(
            {term.text for term in parse_query(query) if not term.exclude},
            key=len,
            reverse=True,
        )
        if not words:
            return text
        pattern = re.compile("|".join(re.escape(word) for word in words), re.IGNORECASE)
        return pattern.sub(lambda match: f"<mark>{match.group(0)}</mark>", text)

    @staticmethod
    def get_search_stats(total: int, found: int) -> Dict[str, int]:
        return {
            "total": total,
            "found": found,
            "percentage": round(found / total * 100) if total > 0 else 0,
        }

    def export_results(self, notes: Iterable[Note], fmt: str = "json") -> str:
        """Export a result set with the current query and filters."""
        fmt = (fmt or "json").lower()
        if fmt not in ("json", "csv"):
            raise ValidationError(
                f"Unsupported search export format: {fmt}",
                field="format",
                value=fmt,
                code=ErrorCode.UNSUPPORTED_FORMAT,
            )
        notes = list(notes)
        folder_names = {
            summary.folder.id: summary.folder.name
            for summary in self.repository.get_folders()
        }
        return export_search_results(
            notes,
            query=self.query,
            filters=self.filters.model_dump(mode="json"),
            fmt=fmt,
            folder_names=folder_names,
        )
