"""Tests for inline chat formatting."""

from sfam.richtext.parser import Segment, extract_mentions, extract_urls, parse_rich_text, to_plain_text


class TestParseRichText:
    def test_empty(self):
        assert parse_rich_text("") == []

    def test_plain_text(self):
        assert parse_rich_text("hello") == [Segment("text", "hello")]

    def test_bold_then_text(self):
        assert parse_rich_text("**hi** there") == [Segment("bold", "hi"), Segment("text", " there")]

    def test_each_marker(self):
        types = [s.type for s in parse_rich_text("`c` ~s~ _i_") if s.type != "text"]
        assert types == ["code", "strike", "italic"]

    def test_mention(self):
        (segment,) = parse_rich_text("@bob")
        assert segment.type == "mention"
        assert segment.username == "bob"
        assert segment.href == "/profile/bob"

    def test_www_link_gets_scheme(self):
        segments = parse_rich_text("see www.example.com")
        assert segments[-1] == Segment("link", "www.example.com", href="https://www.example.com")

    def test_earliest_match_wins_overlap(self):
        segments = parse_rich_text("_a @b_")
        assert segments == [Segment("italic", "a @b")]

    def test_nested_marker_is_content(self):
        segments = parse_rich_text("**_x_**")
        assert segments == [Segment("bold", "_x_")]

    def test_mention_inside_link_is_not_split(self):
        segments = parse_rich_text("go https://a.com/@bob")
        assert [s.type for s in segments] == ["text", "link"]


class TestHelpers:
    def test_extract_urls(self):
        assert extract_urls("a http://x.io b www.y.com") == ["http://x.io", "https://www.y.com"]

    def test_extract_mentions_unique_in_order(self):
        assert extract_mentions("@bob hi @amy and @bob") == ["bob", "amy"]

    def test_extract_from_none(self):
        assert extract_urls(None) == []
        assert extract_mentions(None) == []

    def test_to_plain_text(self):
        assert to_plain_text("**hi** @bob ~old~") == "hi @bob old"
