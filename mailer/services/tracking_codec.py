"""
Open and click tracking for outbound campaign HTML

Wrapping is recipient-specific: every link, the pixel and the unsubscribe
footer carry the recipient's ids, so output must never be reused across
recipients.
"""
import base64
import re
from html import escape, unescape
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import urlencode, urlparse

from ..core.errors import ValidationError

# 1x1 transparent GIF
TRACKING_PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

DEFAULT_RECIPIENT_NAME = "Kunde"

OPEN_PATH = "/tracking/open"
LINK_PATH = "/tracking/link"
UNSUBSCRIBE_PATH = "/unsubscribe"

_HREF_PATTERN = re.compile(r"""href=(["'])(https?://[^"']+)\1""", re.IGNORECASE)
_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


@dataclass(frozen=True)
class OpenCallback:
    recipient_id: str
    campaign_id: str


@dataclass(frozen=True)
class ClickCallback:
    link_id: str
    campaign_id: str
    url: str
    recipient_id: Optional[str] = None


def _first(query: Mapping, key: str) -> Optional[str]:
    value = query.get(key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def personalize(html: str, name: Optional[str]) -> str:
    """Replace ``{name}`` placeholders with the recipient's name"""
    return html.replace("{name}", escape(name or DEFAULT_RECIPIENT_NAME))


def _insert_before_body_close(html: str, fragment: str) -> str:
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + fragment
    last = matches[-1]
    return html[:last.start()] + fragment + html[last.start():]


class TrackingCodec:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def open_url(self, recipient_id: str, campaign_id: str) -> str:
        return f"{self.base_url}{OPEN_PATH}?" + urlencode({"rid": recipient_id, "cid": campaign_id})

    def link_url(self, link_id: str, recipient_id: str, campaign_id: str, url: str) -> str:
        query = urlencode({"lid": link_id, "rid": recipient_id, "cid": campaign_id, "url": url})
        return f"{self.base_url}{LINK_PATH}?{query}"

    def unsubscribe_url(self, token: str) -> str:
        return f"{self.base_url}{UNSUBSCRIBE_PATH}?" + urlencode({"token": token})

    def rewrite_links(self, html: str, recipient_id: str, campaign_id: str) -> str:
        """Point every absolute http(s) link at the click-tracking redirect"""
        counter = 0

        def replace_link(match):
            nonlocal counter
            original_url = unescape(match.group(2))
            # Skip links that already go through us
            if original_url.startswith(self.base_url + "/"):
                return match.group(0)
            counter += 1
            tracking_url = self.link_url(f"l{counter}", recipient_id, campaign_id, original_url)
            return f'href="{escape(tracking_url)}"'

        return _HREF_PATTERN.sub(replace_link, html)

    def unsubscribe_footer(self, token: str) -> str:
        unsubscribe_link = self.unsubscribe_url(token)
        return (
            '<div style="margin-top: 20px; padding-top: 20px; border-top: 1px solid #eee; '
            'font-size: 12px; color: #666;">'
            'Wenn Sie keine weiteren E-Mails erhalten m&ouml;chten, '
            f'<a href="{unsubscribe_link}" style="color: #666;">klicken Sie hier zum Abbestellen</a>.'
            '</div>'
        )

    def tracking_pixel(self, recipient_id: str, campaign_id: str) -> str:
        src = self.open_url(recipient_id, campaign_id)
        return f'<img src="{src}" width="1" height="1" alt="" style="display:none;border:0;" />'

    def wrap_for_tracking(
        self,
        html: str,
        recipient_id: str,
        campaign_id: str,
        unsubscribe_token: str
    ) -> str:
        """Rewrite links, then add the unsubscribe footer and open pixel"""
        html = self.rewrite_links(html or "", recipient_id, campaign_id)
        html = _insert_before_body_close(html, self.unsubscribe_footer(unsubscribe_token))
        return _insert_before_body_close(html, self.tracking_pixel(recipient_id, campaign_id))

    @staticmethod
    def decode_open_callback(query: Mapping) -> OpenCallback:
        rid = _first(query, "rid")
        cid = _first(query, "cid")
        if not rid or not cid:
            raise ValidationError("Open callback requires rid and cid")
        return OpenCallback(recipient_id=rid, campaign_id=cid)

    @staticmethod
    def decode_click_callback(query: Mapping) -> ClickCallback:
        lid = _first(query, "lid")
        cid = _first(query, "cid")
        url = _first(query, "url")
        if not lid or not cid or not url:
            raise ValidationError("Click callback requires lid, cid and url")
        if not is_http_url(url):
            raise ValidationError(f"Refusing to redirect to non-http URL: {url!r}")
        return ClickCallback(link_id=lid, campaign_id=cid, url=url, recipient_id=_first(query, "rid"))
