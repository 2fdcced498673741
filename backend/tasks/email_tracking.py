# backend/tasks/email_tracking.py
"""
HTML instrumentation for automation emails: unsubscribe footer, open
pixel and click-through link rewriting.
"""
import html as html_lib
import re
from urllib.parse import quote, urlencode

from core.config import settings

ANCHOR_PATTERN = re.compile(r"<a\s+([^>]*?)>", re.IGNORECASE | re.DOTALL)
HREF_PATTERN = re.compile(r"""href\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
STYLE_PATTERN = re.compile(r"""style\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
BODY_CLOSE_PATTERN = re.compile(r"</body>", re.IGNORECASE)
TRACKABLE_SCHEMES = ("http://", "https://")

UNSUBSCRIBE_FOOTER = """
<div style="margin: 40px 0 20px; padding-top: 20px; border-top: 1px solid #e5e7eb; text-align: center;">
  <p style="margin: 0; font-size: 12px; color: #6b7280; line-height: 1.5;">
    You're receiving this email because of your interaction with our platform.<br>
    <a href="{url}" style="color: #6b7280; text-decoration: underline;">Unsubscribe</a> from automated emails
  </p>
</div>
"""

PIXEL_TAG = '<img src="{url}" width="1" height="1" style="display:none" alt="" />'


def open_tracking_url(tracking_pixel_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/api/email-tracking/open?{urlencode({'id': tracking_pixel_id})}"


def click_tracking_url(tracking_pixel_id: str, target_url: str, is_cta: bool) -> str:
    return (
        f"{settings.PUBLIC_BASE_URL}/api/email-tracking/click"
        f"?id={quote(tracking_pixel_id, safe='')}"
        f"&url={quote(target_url, safe='')}"
        f"&cta={1 if is_cta else 0}"
    )


def unsubscribe_url(token: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/api/unsubscribe?{urlencode({'token': token})}"


def is_cta_anchor(attributes: str) -> bool:
    """Button-styled anchors carry both padding and background-color inline"""
    style = STYLE_PATTERN.search(attributes)
    if not style:
        return False
    css = style.group(2).lower()
    return "padding" in css and "background-color" in css


def insert_before_body_close(html: str, fragment: str) -> str:
    matches = list(BODY_CLOSE_PATTERN.finditer(html))
    if not matches:
        return html + fragment
    position = matches[-1].start()
    return html[:position] + fragment + html[position:]


def rewrite_links(html: str, tracking_pixel_id: str) -> str:
    """Route http(s) anchors through the click tracker, except unsubscribe links"""

    def _rewrite(match):
        attributes = match.group(1)
        href = HREF_PATTERN.search(attributes)
        if not href:
            return match.group(0)
        target = html_lib.unescape(href.group(2)).strip()
        if not target.lower().startswith(TRACKABLE_SCHEMES) or "unsubscribe" in target.lower():
            return match.group(0)

        tracked = click_tracking_url(tracking_pixel_id, target, is_cta_anchor(attributes))
        quote_char = href.group(1)
        new_href = f"href={quote_char}{tracked}{quote_char}"
        return f"<a {attributes[:href.start()]}{new_href}{attributes[href.end():]}>"

    return ANCHOR_PATTERN.sub(_rewrite, html)


def instrument_email_html(html: str, tracking_pixel_id: str, unsubscribe_token: str) -> str:
    """Footer and pixel go before </body>; then links are rewritten"""
    html = html or ""
    html = insert_before_body_close(html, UNSUBSCRIBE_FOOTER.format(url=unsubscribe_url(unsubscribe_token)))
    html = insert_before_body_close(html, PIXEL_TAG.format(url=open_tracking_url(tracking_pixel_id)))
    return rewrite_links(html, tracking_pixel_id)
