"""
Unit tests for the allow-list HTML sanitizer.

The sanitizer must be total (never raise) and must only let link and image
locations through in the marker attributes written by the rewriter.
"""

import pytest

from app.services.html_sanitizer import allow_attribute, sanitize

SHA = "ab" * 32


class TestSanitizeElements:
    """Element-level allow-list."""

    def test_empty_input_returns_empty_string(self):
        assert sanitize("") == ""

    def test_allowed_markup_is_kept(self):
        html = "<p>Hello <b>bold</b> and <em>em</em></p>"
        assert sanitize(html) == html

    def test_script_is_removed_with_its_content(self):
        result = sanitize("<p>a</p><script>alert('x')</script><p>b</p>")
        assert "<script" not in result
        assert "alert" not in result
        assert result == "<p>a</p><p>b</p>"

    def test_style_block_is_removed_with_its_content(self):
        result = sanitize("<style>p { color: red }</style><p>text</p>")
        assert result == "<p>text</p>"

    def test_disallowed_wrapper_is_unwrapped(self):
        """Unknown tags disappear but their text survives."""
        assert sanitize('<font color="red">hi</font>') == "hi"

    def test_comments_are_stripped(self):
        assert sanitize("<p>a<!-- secret -->b</p>") == "<p>ab</p>"

    def test_iframe_and_svg_are_dropped(self):
        result = sanitize('<iframe src="https://evil.example"></iframe><svg onload="x()"><text>t</text></svg>ok')
        assert result == "ok"

    def test_malformed_markup_does_not_raise(self):
        result = sanitize("<p><b>unclosed <a data-safe-href='/go?url=x'>link")
        assert "unclosed" in result


class TestSanitizeAttributes:
    """Attribute-level allow-list and value rules."""

    def test_event_handlers_are_dropped(self):
        result = sanitize('<p title="t" onclick="steal()">hi</p>')
        assert result == '<p title="t">hi</p>'

    def test_plain_href_is_never_kept(self):
        assert sanitize('<a href="https://example.com">x</a>') == "<a>x</a>"

    def test_plain_src_is_never_kept(self):
        result = sanitize('<img src="https://example.com/a.png" alt="a">')
        assert "src=" not in result
        assert 'alt="a"' in result

    def test_style_attribute_is_dropped(self):
        result = sanitize('<div style="background:url(javascript:alert(1))">y</div>')
        assert result == "<div>y</div>"

    def test_safe_href_to_go_endpoint_is_kept(self):
        html = '<a data-safe-href="/go?url=https%3A%2F%2Fexample.com">x</a>'
        assert sanitize(html) == html

    def test_javascript_safe_href_is_dropped(self):
        assert sanitize('<a data-safe-href="javascript:alert(1)">x</a>') == "<a>x</a>"

    def test_table_cell_span_attributes_are_kept(self):
        html = '<table><tbody><tr><td colspan="2" rowspan="1">x</td></tr></tbody></table>'
        assert sanitize(html) == html


class TestAllowAttribute:
    """Value rules for the image markers."""

    @pytest.mark.parametrize(
        "value",
        [
            "/static/remote-image-blocked.svg",
            "/api/messages/m1/cid/img-1",
            f"/assets/m1/{SHA}.png",
        ],
    )
    def test_local_image_paths_are_allowed(self, value):
        assert allow_attribute("img", "data-safe-src", value) is True

    @pytest.mark.parametrize(
        "value",
        [
            "https://example.com/a.png",
            "data:image/png;base64,AAAA",
            "javascript:alert(1)",
            "/static/other.svg",
            f"/assets/m1/{SHA[:10]}.png",
            "/api/messages/m1/cid/../../../go?url=https://evil.example",
            "/api/messages/m1/cid/%2e%2e/%2e%2e/admin",
            "/api/messages/m1/cid/..\\..\\admin",
            "",
        ],
    )
    def test_other_image_values_are_rejected(self, value):
        assert allow_attribute("img", "data-safe-src", value) is False

    def test_original_src_must_be_http(self):
        assert allow_attribute("img", "data-original-src", "https://example.com/a.png") is True
        assert allow_attribute("img", "data-original-src", "javascript:alert(1)") is False

    def test_unknown_tag_or_attribute_is_rejected(self):
        assert allow_attribute("img", "onerror", "x") is False
        assert allow_attribute("font", "title", "x") is False
        assert allow_attribute("a", "data-safe-src", "/static/remote-image-blocked.svg") is False
