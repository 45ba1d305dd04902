"""Unit tests for candidate link extraction from pages and feeds."""

from ingestion.links import MAX_ANCHOR_CHARS, CandidateLink, extract_links, read_feed, resolve_url

BASE = "https://ssc.gov.in/notices/"


class TestResolveUrl:
    def test_relative_path_is_resolved_against_base(self):
        assert resolve_url("files/cgl.pdf", BASE) == "https://ssc.gov.in/notices/files/cgl.pdf"

    def test_root_relative_path(self):
        assert resolve_url("/uploads/cgl.pdf", BASE) == "https://ssc.gov.in/uploads/cgl.pdf"

    def test_fragment_is_dropped(self):
        assert resolve_url("/uploads/cgl.pdf#page=2", BASE) == "https://ssc.gov.in/uploads/cgl.pdf"

    def test_pseudo_links_are_rejected(self):
        for href in ("javascript:void(0)", "mailto:help@ssc.gov.in", "tel:123", "#top", "", "   "):
            assert resolve_url(href, BASE) is None

    def test_non_http_scheme_is_rejected(self):
        assert resolve_url("ftp://files.ssc.gov.in/cgl.pdf", BASE) is None


class TestExtractLinks:
    def test_anchor_with_pdf_href(self):
        html = '<ul><li>CGL 2025 <a href="/uploads/cgl.pdf">Click here</a></li></ul>'
        links = extract_links(html, BASE)
        assert links == [
            CandidateLink(
                url="https://ssc.gov.in/uploads/cgl.pdf",
                anchor_text="Click here",
                context="CGL 2025 Click here",
            )
        ]

    def test_anchor_text_marks_document_without_pdf_extension(self):
        html = '<a href="/viewer?id=42">Download Advt. No 3/2025</a>'
        links = extract_links(html, BASE)
        assert [l.url for l in links] == ["https://ssc.gov.in/viewer?id=42"]

    def test_unrelated_anchors_are_ignored(self):
        html = '<a href="/about">About us</a><a href="/contact">Contact</a>'
        assert extract_links(html, BASE) == []

    def test_onclick_handler(self):
        html = """<table><tr><td>Stenographer exam</td>
            <td><button onclick="window.open('/docs/steno.pdf','_blank')">View</button></td></tr></table>"""
        links = extract_links(html, BASE)
        assert len(links) == 1
        assert links[0].url == "https://ssc.gov.in/docs/steno.pdf"
        assert links[0].anchor_text == "View"
        assert "Stenographer exam" in links[0].context

    def test_data_attributes(self):
        html = '<span class="btn" data-href="/docs/JE.PDF">Notice</span>'
        links = extract_links(html, BASE)
        assert [l.url for l in links] == ["https://ssc.gov.in/docs/JE.PDF"]

    def test_same_url_from_two_strategies_is_kept_once(self):
        html = """<div>
            <a href="/docs/mts.pdf">MTS notice</a>
            <span onclick="openPdf('/docs/mts.pdf')">open</span>
        </div>"""
        links = extract_links(html, BASE)
        assert len(links) == 1
        assert links[0].anchor_text == "MTS notice"

    def test_page_order_is_preserved(self):
        html = '<a href="/b.pdf">b</a><a href="/a.pdf">a</a><a href="/b.pdf">b again</a>'
        assert [l.url for l in extract_links(html, BASE)] == [
            "https://ssc.gov.in/b.pdf",
            "https://ssc.gov.in/a.pdf",
        ]

    def test_malformed_links_do_not_fail_the_batch(self):
        html = '<a href="javascript:download(\'x.pdf\')">pdf</a><a href="/ok.pdf">ok</a>'
        assert [l.url for l in extract_links(html, BASE)] == ["https://ssc.gov.in/ok.pdf"]

    def test_long_anchor_text_is_truncated(self):
        html = f'<a href="/x.pdf">{"word " * 400}</a>'
        links = extract_links(html, BASE)
        assert len(links[0].anchor_text) == MAX_ANCHOR_CHARS

    def test_empty_page(self):
        assert extract_links("", BASE) == []


RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>UPSC notifications</title>
    <link>https://upsc.gov.in/</link>
    <item>
      <title>Civil Services Examination 2025</title>
      <link>https://upsc.gov.in/sites/default/files/Notif-CSP-25.pdf</link>
      <description>&lt;p&gt;Last date &lt;b&gt;11 Feb&lt;/b&gt;&lt;/p&gt;</description>
    </item>
    <item>
      <title>Press release</title>
      <link>https://upsc.gov.in/press/123</link>
    </item>
  </channel>
</rss>"""


class TestReadFeed:
    def test_only_pdf_items_are_returned(self):
        links = read_feed(RSS, "https://upsc.gov.in/rss.xml")
        assert len(links) == 1
        link = links[0]
        assert link.url == "https://upsc.gov.in/sites/default/files/Notif-CSP-25.pdf"
        assert link.anchor_text == "Civil Services Examination 2025"
        assert link.context == "Last date 11 Feb"

    def test_garbage_feed_yields_nothing(self):
        assert read_feed("this is not xml", "https://upsc.gov.in/rss.xml") == []
