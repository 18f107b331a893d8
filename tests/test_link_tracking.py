"""
Tests for outbound candidate URL extraction.

Running Tests:
    $ PYTHONPATH=src python -m pytest tests/test_link_tracking.py -v
"""
from indieweb.link_tracking import MAX_CANDIDATES, extract_candidate_urls, origin_of

SITE = "https://mysite.test"


class TestExtractCandidateUrls:
    def test_finds_links_in_attributes_and_text(self):
        html = (
            '<p>See <a href="https://a.example/post">this</a> and also '
            "https://b.example/page for details.</p>"
            '<img src="https://c.example/img.png">'
        )

        assert extract_candidate_urls(html, SITE) == [
            "https://a.example/post",
            "https://b.example/page",
            "https://c.example/img.png",
        ]

    def test_deduplicates_in_encounter_order(self):
        html = (
            '<a href="https://b.example/">b</a>'
            '<a href="https://a.example/">a</a>'
            '<a href="https://b.example/">b again</a>'
        )

        assert extract_candidate_urls(html, SITE) == ["https://b.example/", "https://a.example/"]

    def test_skips_self_links(self):
        html = (
            f'<a href="{SITE}/posts/other">mine</a>'
            '<a href="https://a.example/x">theirs</a>'
            '<a href="HTTPS://MYSITE.TEST/about">mine, shouting</a>'
        )

        assert extract_candidate_urls(html, SITE) == ["https://a.example/x"]

    def test_trailing_punctuation_and_entities_cleaned(self):
        html = "<p>Read https://a.example/post. Then (https://b.example/q?a=1&amp;b=2).</p>"

        assert extract_candidate_urls(html, SITE) == [
            "https://a.example/post",
            "https://b.example/q?a=1&b=2",
        ]

    def test_cap_applies_before_self_links_are_removed(self):
        self_links = "".join(f'<a href="{SITE}/posts/{i}">x</a>' for i in range(10))
        external = "".join(f'<a href="https://ext{i}.example/">x</a>' for i in range(30))

        urls = extract_candidate_urls(self_links + external, SITE)

        assert len(urls) == MAX_CANDIDATES - 10
        assert urls[0] == "https://ext0.example/"

    def test_forty_links_capped_at_twenty_five(self):
        html = "".join(f'<a href="https://ext{i}.example/">x</a>' for i in range(40))

        urls = extract_candidate_urls(html, SITE)

        assert len(urls) == 25
        assert urls[-1] == "https://ext24.example/"

    def test_relative_links_ignored(self):
        assert extract_candidate_urls('<a href="/local">x</a><a href="mailto:a@b.c">m</a>', SITE) == []

    def test_empty_html(self):
        assert extract_candidate_urls("", SITE) == []


def test_origin_of():
    assert origin_of("https://Example.COM/path?q=1") == "https://example.com"
    assert origin_of("http://example.com:8080/") == "http://example.com:8080"
    assert origin_of("not a url") == ""
