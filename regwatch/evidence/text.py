"""Text normalization shared by hashing, extraction and embedding."""

import hashlib
import re

from bs4 import BeautifulSoup, Comment

SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
WHITESPACE_RE = re.compile(r"\s+")

BOILERPLATE_TAGS = ("script", "style", "nav", "footer", "header", "noscript", "iframe")


def sha256_hex(text: str | bytes) -> str:
    data = text.encode("utf-8") if isinstance(text, str) else text
    return hashlib.sha256(data).hexdigest()


def normalize_html_for_hash(html: str) -> str:
    """Drop scripts, styles, comments and whitespace runs.

    Rotating analytics snippets and reformatting must not produce a new hash.
    """
    html = SCRIPT_RE.sub("", html)
    html = STYLE_RE.sub("", html)
    html = COMMENT_RE.sub("", html)
    return WHITESPACE_RE.sub(" ", html).strip()


def html_to_text(html: str) -> str:
    """Readable text of an HTML page without navigation boilerplate."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(BOILERPLATE_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    return "\n".join(WHITESPACE_RE.sub(" ", line) for line in lines if line)


def truncate(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars]
