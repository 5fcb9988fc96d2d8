"""
Tests for outbound HTML rewriting and callback decoding
"""
from html import unescape
from urllib.parse import parse_qs, urlparse

import pytest

from mailer.core.errors import ValidationError
from mailer.services.tracking_codec import (
    TRACKING_PIXEL_GIF,
    TrackingCodec,
    personalize,
)

BASE = "https://mail.example.test"


@pytest.fixture
def codec():
    return TrackingCodec(BASE + "/")


def tracked_links(html):
    """Query dicts of every click-tracking link in ``html``"""
    links = []
    for part in html.split('href="')[1:]:
        url = unescape(part.split('"', 1)[0])
        if url.startswith(f"{BASE}/tracking/link?"):
            links.append({k: v[0] for k, v in parse_qs(urlparse(url).query).items()})
    return links


class TestWrapForTracking:
    def test_rewrites_links_in_document_order(self, codec):
        html = (
            '<html><body>'
            '<a href="https://example.com/menu?day=mon&veg=1">Menu</a>'
            "<a HREF='http://example.com/events'>Events</a>"
            '</body></html>'
        )

        wrapped = codec.wrap_for_tracking(html, "r-1", "c-1", "tok-1")

        links = tracked_links(wrapped)
        assert [link["lid"] for link in links] == ["l1", "l2"]
        assert links[0]["url"] == "https://example.com/menu?day=mon&veg=1"
        assert links[1]["url"] == "http://example.com/events"
        assert all(link["rid"] == "r-1" and link["cid"] == "c-1" for link in links)
        assert "example.com/menu?day=mon&veg=1\"" not in wrapped

    def test_leaves_non_http_and_own_links_alone(self, codec):
        html = (
            '<body><a href="mailto:team@example.com">Mail</a>'
            f'<a href="{BASE}/unsubscribe?token=x">Stop</a></body>'
        )

        wrapped = codec.wrap_for_tracking(html, "r-1", "c-1", "tok-1")

        assert 'href="mailto:team@example.com"' in wrapped
        assert f'href="{BASE}/unsubscribe?token=x"' in wrapped
        assert tracked_links(wrapped) == []

    def test_footer_and_pixel_go_before_last_body_close(self, codec):
        html = "<html><BODY><p>Hi</p></Body></html>"

        wrapped = codec.wrap_for_tracking(html, "r-1", "c-1", "tok-1")

        footer = wrapped.index(f"{BASE}/unsubscribe?token=tok-1")
        pixel = wrapped.index(f"{BASE}/tracking/open?rid=r-1&cid=c-1")
        assert footer < pixel < wrapped.index("</Body>")

    def test_appends_without_body(self, codec):
        wrapped = codec.wrap_for_tracking("<p>Plain fragment</p>", "r-1", "c-1", "tok-1")

        assert wrapped.startswith("<p>Plain fragment</p>")
        assert wrapped.endswith('style="display:none;border:0;" />')
        assert "/unsubscribe?token=tok-1" in wrapped

    def test_entity_escaped_query_is_carried_unescaped(self, codec):
        html = '<body><a href="https://example.com/menu?a=1&amp;b=2">Menu</a></body>'

        wrapped = codec.wrap_for_tracking(html, "r-1", "c-1", "tok-1")

        href = wrapped.split('href="', 1)[1].split('"', 1)[0]
        assert "&amp;rid=r-1" in href
        assert "&rid=" not in href
        assert tracked_links(wrapped)[0]["url"] == "https://example.com/menu?a=1&b=2"

    def test_output_is_recipient_specific(self, codec):
        html = '<body><a href="https://example.com/">x</a></body>'

        first = codec.wrap_for_tracking(html, "r-1", "c-1", "tok-1")
        second = codec.wrap_for_tracking(html, "r-2", "c-1", "tok-2")

        assert first != second
        assert "rid=r-2" in second and "rid=r-1" not in second


class TestPersonalize:
    def test_replaces_name(self):
        assert personalize("Hallo {name}!", "Jana") == "Hallo Jana!"

    def test_name_is_html_escaped(self):
        assert personalize("<p>Hallo {name}</p>", "Tom & <Jerry>") == "<p>Hallo Tom &amp; &lt;Jerry&gt;</p>"

    def test_falls_back_to_default(self):
        assert personalize("Hallo {name}!", None) == "Hallo Kunde!"


class TestDecodeCallbacks:
    def test_open_callback(self):
        callback = TrackingCodec.decode_open_callback({"rid": "r-1", "cid": "c-1"})

        assert callback.recipient_id == "r-1"
        assert callback.campaign_id == "c-1"

    def test_open_callback_requires_ids(self):
        with pytest.raises(ValidationError):
            TrackingCodec.decode_open_callback({"rid": "r-1"})

    def test_click_callback_round_trip(self, codec):
        url = codec.link_url("l3", "r-9", "c-2", "https://example.com/a b?x=1&y=2")
        query = {k: v for k, v in parse_qs(urlparse(url).query).items()}

        callback = TrackingCodec.decode_click_callback(query)

        assert callback.link_id == "l3"
        assert callback.recipient_id == "r-9"
        assert callback.url == "https://example.com/a b?x=1&y=2"

    def test_click_without_recipient(self):
        callback = TrackingCodec.decode_click_callback(
            {"lid": "l1", "cid": "c-1", "url": "https://example.com"}
        )

        assert callback.recipient_id is None

    @pytest.mark.parametrize("query", [
        {"lid": "l1", "cid": "c-1"},
        {"cid": "c-1", "url": "https://example.com"},
        {"lid": "l1", "cid": "c-1", "url": "javascript:alert(1)"},
        {"lid": "l1", "cid": "c-1", "url": "ftp://example.com/file"},
    ])
    def test_click_callback_rejects_bad_queries(self, query):
        with pytest.raises(ValidationError):
            TrackingCodec.decode_click_callback(query)


def test_pixel_is_a_gif():
    assert TRACKING_PIXEL_GIF.startswith(b"GIF89a")
    assert len(TRACKING_PIXEL_GIF) == 42
