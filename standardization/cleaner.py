"""
Text and URL Cleaning

Helpers shared by the normalizer:
- clean_text: collapse whitespace
- strip_html: remove tags, unescape entities
- normalize_url: protocol normalization + scheme/host validation
- filter_images: allowed-extension allowlist
"""

import html
import re
import warnings
from typing import Optional, List, Iterable
from urllib.parse import urlparse

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

ALLOWED_IMAGE_EXTENSIONS = ('jpg', 'jpeg', 'png', 'webp', 'gif')

_WHITESPACE = re.compile(r'\s+')


def clean_text(text: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; None for blank input"""
    if text is None:
        return None
    cleaned = _WHITESPACE.sub(' ', text).strip()
    return cleaned or None


def strip_html(text: Optional[str]) -> Optional[str]:
    """Plain text from an HTML fragment"""
    if not text:
        return None
    if '<' in text:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', MarkupResemblesLocatorWarning)
            text = BeautifulSoup(text, 'html.parser').get_text(' ')
    # Double-encoded entities survive one pass of the parser
    return clean_text(html.unescape(text))


def normalize_url(url: Optional[str]) -> Optional[str]:
    """
    Protocol-normalize and validate a URL.

    '//host/path' and bare 'host/path' become https. Anything without
    an http(s) scheme and a dotted host is rejected.
    """
    if not url:
        return None
    url = url.strip()
    if not url:
        return None

    if url.startswith('//'):
        url = 'https:' + url
    elif not re.match(r'^[a-zA-Z][a-zA-Z0-9+.-]*://', url):
        if url.startswith(('/', 'javascript:', 'mailto:', 'data:', '#')):
            return None
        url = 'https://' + url

    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https'):
        return None
    host = parsed.hostname or ''
    if '.' not in host and host != 'localhost':
        return None
    if ' ' in host:
        return None
    return url


def image_extension(url: str) -> Optional[str]:
    path = urlparse(url).path
    if '.' not in path.rsplit('/', 1)[-1]:
        return None
    return path.rsplit('.', 1)[-1].lower()


def filter_images(
    urls: Iterable[Optional[str]],
    allowed: Iterable[str] = ALLOWED_IMAGE_EXTENSIONS,
) -> List[str]:
    """Valid image URLs with an allowed extension, duplicates dropped"""
    allowed = set(allowed)
    result = []
    for url in urls:
        normalized = normalize_url(url)
        if normalized is None or normalized in result:
            continue
        if image_extension(normalized) in allowed:
            result.append(normalized)
    return result


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 3].rstrip() + '...'


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = re.sub(r'\D', '', phone)
    if len(digits) < 10:
        return None
    return phone.strip()
