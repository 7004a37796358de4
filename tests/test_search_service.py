# tests/test_search_service.py
"""Tests for query parsing, filtering and persisted search state."""
import csv
import datetime
import io
import json

import pytest

from notekeep.exceptions import ErrorCode, ValidationError
from notekeep.services.search_service import (
    FILTERS_SETTING,
    HISTORY_SETTING,
    SearchFilters,
    SearchService,
    SearchTerm,
    parse_query,
)


@pytest.fixture
async def search(repository, store, test_config):
    """A loaded search service over the test repository."""
    service = SearchService(repository, store, test_config)
    await service.load()
    return service


class TestParseQuery:
    """Tests for the query tokenizer."""

    def test_plain_words(self):
        assert parse_query("Project Plan") == [
            SearchTerm("project"),
            SearchTerm("plan"),
        ]

    def test_exclusion(self):
        assert parse_query("project -draft") == [
            SearchTerm("project"),
            SearchTerm("draft", exclude=True),
        ]

    def test_quoted_phrase(self):
        assert parse_query('"release notes" v2') == [
            SearchTerm("release notes", phrase=True),
            SearchTerm("v2"),
        ]

    def test_excluded_phrase(self):
        assert parse_query('-"old stuff"') == [
            SearchTerm("old stuff", exclude=True, phrase=True)
        ]

    def test_unterminated_quote_runs_to_end(self):
        assert parse_query('keep "open phrase') == [
            SearchTerm("keep"),
            SearchTerm("open phrase", phrase=True),
        ]

    def test_empty_terms_dropped(self):
        assert parse_query('  - "" ') == []
        assert parse_query("") == []
        assert parse_query(None) == []


class TestSearchFilters:
    """Tests for the SearchFilters model."""

    def test_defaults(self):
        filters = SearchFilters()
        assert filters.folders == []
        assert filters.include_title and filters.include_content and filters.include_tags

    def test_camel_case_and_dates(self):
        filters = SearchFilters.model_validate({
            "dateFrom": "2024-01-01T00:00:00Z",
            "includeTags": False,
            "tags": "single",
        })
        assert filters.date_from.year == 2024
        assert filters.include_tags is False
        assert filters.tags == ["single"]

    def test_invalid_date(self):
        with pytest.raises(ValueError):
            SearchFilters(date_to="not a date")


@pytest.mark.anyio
class TestSearch:
    """Tests for SearchService.search."""

    async def test_include_and_exclude(self, repository, search):
        keep = repository.create(title="Project plan", content="final version")
        repository.create(title="Project draft", content="wip")
        repository.create(title="Unrelated")

        assert search.search("project -draft") == [keep]

    async def test_phrase_must_be_contiguous(self, repository, search):
        phrase = repository.create(title="Release notes for v2")
        repository.create(title="Notes about a release")
        assert search.search('"release notes"') == [phrase]

    async def test_matches_markup_free_content_and_tags(self, repository, search):
        in_content = repository.create(title="A", content="<p>needle<b>s</b></p>")
        in_tags = repository.create(title="B", tags=["needle"])
        results = search.search("needle")
        assert results == [in_content, in_tags]

    async def test_results_keep_repository_order(self, repository, search):
        created = [repository.create(title=f"match {i}") for i in range(5)]
        assert search.search("match") == created

    async def test_empty_query_matches_everything(self, repository, search):
        notes = [repository.create(title="x"), repository.create(title="y")]
        assert search.search("") == notes

    async def test_field_switches(self, repository, search):
        repository.create(title="Budget", tags=["finance"])
        no_title = SearchFilters(include_title=False)
        assert search.search("budget", filters=no_title) == []
        no_tags = SearchFilters(include_tags=False)
        assert search.search("finance", filters=no_tags) == []

    async def test_folder_and_tag_filters(self, repository, search):
        work = repository.create_folder("Work")
        in_work = repository.create(title="Report", folder_id=work.id, tags=["q1"])
        repository.create(title="Report", tags=["q1"])

        assert search.search("report", filters=SearchFilters(folders=[work.id])) == [in_work]
        assert len(search.search("", filters=SearchFilters(tags=["q1", "q2"]))) == 2
        assert search.search("", filters=SearchFilters(tags=["q2"])) == []

    async def test_date_filters(self, repository, search):
        note = repository.create(title="Dated")
        tomorrow = note.modified_at + datetime.timedelta(days=1)
        yesterday = note.modified_at - datetime.timedelta(days=1)
        assert search.search("", filters=SearchFilters(date_from=tomorrow)) == []
        assert search.search("", filters=SearchFilters(date_to=yesterday)) == []
        both = SearchFilters(date_from=yesterday, date_to=tomorrow)
        assert search.search("", filters=both) == [note]

    async def test_uses_current_query(self, repository, search):
        hit = repository.create(title="Alpha")
        repository.create(title="Beta")
        await search.set_query("alpha")
        assert search.search() == [hit]


@pytest.mark.anyio
class TestHistoryAndFilters:
    """Tests for persisted history and filters."""

    async def test_history_is_newest_first_and_unique(self, search):
        await search.add_to_history("one")
        await search.add_to_history("two")
        await search.add_to_history("one")
        assert search.get_search_history() == ["one", "two"]

    async def test_history_is_bounded(self, search, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "search_history_size", 3)
        for query in ["a", "b", "c", "d"]:
            await search.add_to_history(query)
        assert search.get_search_history() == ["d", "c", "b"]

    async def test_blank_queries_not_recorded(self, search):
        await search.set_query("   ")
        assert search.get_search_history() == []

    async def test_history_persists(self, repository, store, search, test_config):
        await search.set_query("persisted")
        assert await store.get_setting(HISTORY_SETTING) == ["persisted"]

        restored = SearchService(repository, store, test_config)
        await restored.load()
        assert restored.get_search_history() == ["persisted"]

    async def test_clear_history(self, store, search):
        await search.add_to_history("gone")
        await search.clear_search_history()
        assert search.get_search_history() == []
        assert await store.get_setting(HISTORY_SETTING) == []

    async def test_malformed_history_ignored(self, repository, store, test_config):
        await store.put_setting(HISTORY_SETTING, "not a list")
        service = SearchService(repository, store, test_config)
        await service.load()
        assert service.get_search_history() == []

    async def test_filters_persist(self, repository, store, search, test_config):
        await search.set_filters(tags=["work"], include_content=False)
        saved = await store.get_setting(FILTERS_SETTING)
        assert saved["tags"] == ["work"]

        restored = SearchService(repository, store, test_config)
        await restored.load()
        assert restored.get_filters().tags == ["work"]
        assert restored.get_filters().include_content is False

    async def test_legacy_camel_case_filters_load(self, repository, store, test_config):
        await store.put_setting(FILTERS_SETTING, {"includeTitle": False, "dateFrom": None})
        service = SearchService(repository, store, test_config)
        await service.load()
        assert service.get_filters().include_title is False

    async def test_invalid_filter_change_rejected(self, search):
        await search.set_filters(tags=["keep"])
        with pytest.raises(ValidationError):
            await search.set_filters(date_from="someday")
        assert search.get_filters().tags == ["keep"]
        assert search.get_filters().date_from is None

    async def test_clear_filters(self, search):
        await search.set_filters(tags=["x"])
        await search.clear_filters()
        assert search.get_filters() == SearchFilters()

    async def test_get_filters_returns_copy(self, search):
        filters = search.get_filters()
        filters.tags.append("mutated")
        assert search.get_filters().tags == []


@pytest.mark.anyio
class TestHelpers:
    """Suggestions, highlighting, stats and export."""

    async def test_suggestions(self, repository, search):
        repository.create(title="Meeting notes", tags=["meetings", "work"])
        repository.create(title="Meet the team")
        suggestions = search.generate_suggestions("mee")
        assert "meeting" in suggestions
        assert "#meetings" in suggestions
        assert "meet" in suggestions
        assert search.generate_suggestions("m") == []

    async def test_suggestions_are_capped(self, repository, search):
        for i in range(10):
            repository.create(title=f"topic{i}")
        assert len(search.generate_suggestions("to")) == 5

    async def test_export_results_csv(self, repository, search):
        folder = repository.create_folder("Work")
        note = repository.create(
            title="Report", content="<p>Quarterly</p>", tags=["a", "b"], folder_id=folder.id
        )
        rows = list(csv.reader(io.StringIO(search.export_results([note], "csv"))))
        assert rows[0] == ["Title", "Content", "Tags", "Folder", "Created", "Modified"]
        assert rows[1][:4] == ["Report", "Quarterly", "a, b", "Work"]

    async def test_export_results_json(self, repository, search):
        note = repository.create(title="Report")
        await search.set_query("report")
        payload = json.loads(search.export_results([note]))
        assert payload["query"] == "report"
        assert payload["result_count"] == 1
        assert payload["notes"][0]["id"] == note.id

    async def test_export_results_unsupported(self, search):
        with pytest.raises(ValidationError) as exc_info:
            search.export_results([], "xml")
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_FORMAT


class TestStaticHelpers:
    """Highlighting and result statistics."""

    def test_highlight_terms(self):
        highlighted = SearchService.highlight_terms("Release Notes and more", "release -more")
        assert highlighted == "<mark>Release</mark> Notes and more"

    def test_highlight_every_occurrence(self):
        highlighted = SearchService.highlight_terms("note, Note, NOTE", "note")
        assert highlighted.count("<mark>") == 3

    def test_highlight_without_terms(self):
        assert SearchService.highlight_terms("text", "-only") == "text"
        assert SearchService.highlight_terms("", "x") == ""

    def test_search_stats(self):
        assert SearchService.get_search_stats(8, 2) == {"total": 8, "found": 2, "percentage": 25}
        assert SearchService.get_search_stats(0, 0)["percentage"] == 0
