# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for segrelay.rewrite — insertion point, payload, URL repair, idempotence."""

from __future__ import annotations

import json
import re

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from segrelay.rewrite import (
    INJECTION_MARKER,
    build_injection_payload,
    find_head_insertion_point,
    is_html_content_type,
    looks_like_html,
    rewrite_document,
    rewrite_protocol_relative,
    serialize_segments,
)
from segrelay.urls import RewriteContext

CTX = RewriteContext.from_url("https://example.com/dir/page.html")
HTTP_CTX = RewriteContext.from_url("http://example.com/")
SEGMENTS = {"global": ["news", "sports"]}


# =========================================================================
# Content detection
# =========================================================================


class TestContentDetection:
    @pytest.mark.parametrize("ct", ["text/html", "text/html; charset=ISO-8859-1", "TEXT/HTML", "application/xhtml+xml"])
    def test_html_types(self, ct):
        assert is_html_content_type(ct)

    @pytest.mark.parametrize("ct", ["", "application/json", "text/plain", "image/png", "text/css"])
    def test_non_html_types(self, ct):
        assert not is_html_content_type(ct)

    def test_sniff(self):
        assert looks_like_html("  <!DOCTYPE html><p>x")
        assert looks_like_html("<html><body>")
        assert not looks_like_html('{"a": 1}')


# =========================================================================
# Insertion point
# =========================================================================


class TestFindHeadInsertionPoint:
    def test_after_head(self):
        html = "<!DOCTYPE html><html><head><title>t</title></head></html>"
        assert html[: find_head_insertion_point(html)].endswith("<head>")

    def test_head_with_attributes(self):
        html = '<html><head class="x" data-a="1"><meta charset="utf-8">'
        assert html[: find_head_insertion_point(html)].endswith('data-a="1">')

    def test_header_element_is_not_head(self):
        html = '<html lang="en"><body><header>top</header></body></html>'
        assert html[: find_head_insertion_point(html)] == '<html lang="en">'

    def test_doctype_fallback(self):
        html = "<!DOCTYPE html><p>fragment</p>"
        assert find_head_insertion_point(html) == len("<!DOCTYPE html>")

    def test_fragment_inserts_at_start(self):
        assert find_head_insertion_point("<p>just a fragment</p>") == 0

    def test_case_insensitive(self):
        html = "<HTML><HEAD><TITLE>t</TITLE></HEAD>"
        assert html[: find_head_insertion_point(html)] == "<HTML><HEAD>"

    def test_commented_out_head_skipped(self):
        html = "<html><!-- <head> legacy --><head><title>t</title></head></html>"
        assert html[: find_head_insertion_point(html)] == "<html><!-- <head> legacy --><head>"

    def test_conditional_comment_html_skipped(self):
        html = (
            '<!DOCTYPE html><!--[if lt IE 9]><html class="old-ie"><![endif]-->'
            "<!--[if gte IE 9]><!--><html><!--<![endif]--><title>t</title></html>"
        )
        assert find_head_insertion_point(html) == html.index("<html>") + len("<html>")

    def test_doctype_inside_comment_ignored(self):
        assert find_head_insertion_point("<!-- <!DOCTYPE html> --><p>x</p>") == 0

    def test_unterminated_comment_hides_rest(self):
        assert find_head_insertion_point("<p>x</p><!-- <html><head> never closed") == 0


# =========================================================================
# Payload
# =========================================================================


class TestPayload:
    def test_script_shape(self):
        payload = build_injection_payload({"global": ["a"]})
        assert payload == (
            f"<script {INJECTION_MARKER}>"
            "window.scope3 = window.scope3 || {};"
            'window.scope3.segments = {"global":["a"]};'
            "</script>"
        )

    def test_custom_namespace(self):
        payload = build_injection_payload({"global": []}, js_namespace="acme")
        assert "window.acme = window.acme || {};" in payload
        assert "window.acme.segments = " in payload

    def test_empty_segments_still_define_global(self):
        assert 'segments = {"global":[]};' in build_injection_payload(None)

    def test_base_tag_appended(self):
        payload = build_injection_payload(SEGMENTS, base_href="https://example.com/dir/")
        assert payload.endswith(f'<base href="https://example.com/dir/" {INJECTION_MARKER}>')

    def test_script_breaking_characters_escaped(self):
        segments = {"global": ["</script><script>alert(1)</script>", "a&b", "line\u2028sep"]}
        serialized = serialize_segments(segments)
        assert "</script" not in serialized
        assert "<" not in serialized
        assert "&" not in serialized
        assert "\u2028" not in serialized
        assert "//" not in serialized
        assert json.loads(serialized) == segments

    def test_global_always_first_key(self):
        serialized = serialize_segments({"slot-1": ["x"]})
        assert list(json.loads(serialized)) == ["global", "slot-1"]


# =========================================================================
# Protocol-relative URL repair
# =========================================================================


class TestRewriteProtocolRelative:
    @pytest.mark.parametrize(
        ("before", "after"),
        [
            ('<img src="//cdn.com/a.png">', '<img src="https://cdn.com/a.png">'),
            ("<script src='//cdn.com/a.js'></script>", "<script src='https://cdn.com/a.js'></script>"),
            ("<img src=//cdn.com/a.png>", "<img src=https://cdn.com/a.png>"),
            ('<a href = "//other.com/x">', '<a href = "https://other.com/x">'),
            ('<form action="//api.com/post">', '<form action="https://api.com/post">'),
            ('<video poster="//cdn.com/p.jpg">', '<video poster="https://cdn.com/p.jpg">'),
            ('<img data-src="//cdn.com/lazy.png">', '<img data-src="https://cdn.com/lazy.png">'),
            ('<object data="//cdn.com/o.svg">', '<object data="https://cdn.com/o.svg">'),
            ('<IMG SRC="//cdn.com/A.png">', '<IMG SRC="https://cdn.com/A.png">'),
        ],
    )
    def test_attributes(self, before, after):
        assert rewrite_protocol_relative(before, CTX) == after

    def test_srcset_candidates(self):
        html = '<img srcset="//cdn.com/a.png 1x, //cdn.com/b.png 2x, /local.png 3x">'
        assert rewrite_protocol_relative(html, CTX) == (
            '<img srcset="https://cdn.com/a.png 1x, https://cdn.com/b.png 2x, /local.png 3x">'
        )

    def test_css_url(self):
        html = "<style>.a{background:url(//cdn.com/bg.png)} .b{background:url( '//cdn.com/b.png' )}</style>"
        assert rewrite_protocol_relative(html, CTX) == (
            "<style>.a{background:url(https://cdn.com/bg.png)} .b{background:url( 'https://cdn.com/b.png' )}</style>"
        )

    def test_inline_style_attribute(self):
        html = '<div style="background-image:url(&quot;x&quot;);background:url(//cdn.com/x.png)"></div>'
        assert "url(https://cdn.com/x.png)" in rewrite_protocol_relative(html, CTX)

    def test_css_import(self):
        assert rewrite_protocol_relative('@import "//fonts.com/f.css";', CTX) == '@import "https://fonts.com/f.css";'

    def test_base_scheme_used(self):
        assert rewrite_protocol_relative('<img src="//cdn.com/a.png">', HTTP_CTX) == '<img src="http://cdn.com/a.png">'

    @pytest.mark.parametrize(
        "html",
        [
            '<a href="https://example.com/x">',
            '<a href="#top">',
            '<a href="javascript:void(0)">',
            '<img src="data:image/png;base64,AAAA">',
            '<a href="/root/relative">',
            '<a href="relative/page.html">',
            "<p>see //not-an-attribute.com</p>",
            "<script>var u = '//cdn.com/x.js';</script>",
        ],
    )
    def test_untouched(self, html):
        assert rewrite_protocol_relative(html, CTX) == html


# =========================================================================
# rewrite_document
# =========================================================================


class TestRewriteDocument:
    def test_injects_after_head(self):
        html = "<!DOCTYPE html><html><head><title>t</title></head><body></body></html>"
        out = rewrite_document(html, CTX, SEGMENTS)
        assert out.startswith(f"<!DOCTYPE html><html><head><script {INJECTION_MARKER}>")
        assert out.endswith("<title>t</title></head><body></body></html>")
        assert 'window.scope3.segments = {"global":["news","sports"]};' in out

    def test_script_lands_outside_conditional_comments(self):
        html = (
            '<!DOCTYPE html><!--[if lt IE 9]><html class="old-ie"><![endif]-->'
            "<!--[if gte IE 9]><!--><html><!--<![endif]--><title>t</title><body></body></html>"
        )
        out = rewrite_document(html, CTX, SEGMENTS)
        assert f"<html><script {INJECTION_MARKER}>" in out
        visible = re.sub(r"<!--.*?-->", "", out, flags=re.DOTALL)
        assert 'window.scope3.segments = {"global":["news","sports"]};' in visible
        assert rewrite_document(out, CTX, SEGMENTS) == out

    def test_fragment_gets_payload_at_start(self):
        out = rewrite_document("<p>hi</p>", CTX, SEGMENTS)
        assert out.startswith(f"<script {INJECTION_MARKER}>")
        assert out.endswith("<p>hi</p>")

    def test_base_injected_in_proxy_mode(self):
        out = rewrite_document("<html><head></head></html>", CTX, SEGMENTS, inject_base=True)
        assert '<base href="https://example.com/dir/"' in out

    def test_existing_base_respected(self):
        html = '<html><head><base href="https://elsewhere.com/"></head></html>'
        out = rewrite_document(html, CTX, SEGMENTS, inject_base=True)
        assert out.count("<base") == 1

    def test_no_base_by_default(self):
        assert "<base" not in rewrite_document("<html><head></head></html>", CTX, SEGMENTS)

    def test_rest_of_document_preserved(self):
        html = '<html><head>\n  <meta charset="utf-8">\n</head><body>\n<p class=x>Text &amp; more</p></body></html>'
        out = rewrite_document(html, CTX, SEGMENTS)
        payload = build_injection_payload(SEGMENTS)
        assert out.replace(payload, "", 1) == html

    def test_idempotent(self):
        html = '<html><head></head><body><img src="//cdn.com/a.png"></body></html>'
        once = rewrite_document(html, CTX, SEGMENTS, inject_base=True)
        assert rewrite_document(once, CTX, SEGMENTS, inject_base=True) == once
        assert once.count(INJECTION_MARKER) == 2  # script + base

    def test_second_pass_keeps_first_segments(self):
        once = rewrite_document("<html><head></head></html>", CTX, {"global": ["a"]})
        twice = rewrite_document(once, CTX, {"global": ["b"]})
        assert twice == once


HTML_LIKE = st.lists(
    st.sampled_from(
        list("abc<>/=\"' \n()#:.,@")
        + ["<head>", "<html>", "<!DOCTYPE html>", " src=", " href=", " srcset=", "url(", "@import ", "//", "</script>"]
    ),
    max_size=60,
).map("".join)

SEGMENTS_STRATEGY = st.dictionaries(
    st.sampled_from(["global", "slot-1", "div-top"]),
    st.lists(st.text(max_size=10), max_size=3),
    max_size=3,
)


class TestRewriteProperties:
    @settings(max_examples=200, suppress_health_check=[HealthCheck.too_slow])
    @given(html=HTML_LIKE, segments=SEGMENTS_STRATEGY, inject_base=st.booleans())
    def test_rewrite_is_idempotent(self, html, segments, inject_base):
        once = rewrite_document(html, CTX, segments, inject_base=inject_base)
        assert rewrite_document(once, CTX, segments, inject_base=inject_base) == once

    @given(html=HTML_LIKE, segments=SEGMENTS_STRATEGY)
    def test_exactly_one_script_injected(self, html, segments):
        if INJECTION_MARKER in html:
            return
        out = rewrite_document(html, CTX, segments)
        assert out.count(f"<script {INJECTION_MARKER}>") == 1
