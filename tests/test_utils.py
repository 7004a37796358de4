"""Tests for markup and formatting helpers."""
import datetime

from notekeep.utils import count_words, format_date, strip_html


class TestStripHtml:
    """Tests for strip_html."""

    def test_removes_tags(self):
        assert strip_html("<p>Hello <b>world</b></p>") == "Hello world"

    def test_block_boundaries_separate_words(self):
        assert strip_html("<p>one</p><p>two</p>") == "one two"
        assert strip_html("line<br>break<br/>again") == "line break again"

    def test_decodes_entities(self):
        assert strip_html("a &amp; b &lt;c&gt;") == "a & b <c>"

    def test_drops_attributes_and_collapses_whitespace(self):
        assert strip_html('<span style="color:red">  spaced \n\n out </span>') == "spaced out"

    def test_empty(self):
        assert strip_html("") == ""
        assert strip_html(None) == ""


class TestCountWords:
    """Tests for count_words."""

    def test_counts_plain_words(self):
        assert count_words("<p>one two</p><p>three</p>") == 3

    def test_empty_content(self):
        assert count_words("") == 0
        assert count_words("<p></p>") == 0


def test_format_date():
    assert format_date(datetime.datetime(2024, 2, 9, 23, 59)) == "2024-02-09"
