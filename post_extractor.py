"""
Turns a fetched post page into metadata plus a Markdown body, and renders the exported document.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import trafilatura
from bs4 import BeautifulSoup, Tag
from markdownify import ATX, MarkdownConverter

log = logging.getLogger(__name__)

CONTENT_SELECTORS: tuple[str, ...] = ('article', '.available-content', '.post-content', 'main')
JUNK_SELECTORS: tuple[str, ...] = (
    'nav',
    'footer',
    'a[href*="subscribe"]',
    'a[href*="signin"]',
    'button',
    'form',
    '[role="button"]',
    '.share',
    '.post-actions',
    '.subscription-widget',
    '.paywall',
    '[data-testid*="paywall"]',
    '[data-testid*="subscription"]',
)
LISTING_DATE_FIELDS: tuple[str, ...] = ('post_date', 'published_at', 'publication_date')


class ExtractionError(Exception):
    """
    No article body could be located in a fetched page.
    """

    def __init__(self, url: str) -> None:
        self.url: str = url
        super().__init__(f'Cannot find article content for: {url}')


@dataclass(frozen=True)
class PostDocument:
    title: str
    author: str
    published_date_raw: str
    subtitle: str
    body_markdown: str
    url: str


def _text_of(soup: BeautifulSoup, selector: str) -> str:
    el = soup.select_one(selector)
    return el.get_text().strip() if el is not None else ''


def _attr_of(soup: BeautifulSoup, selector: str, attr: str) -> str:
    el = soup.select_one(selector)
    if el is None:
        return ''
    value = el.get(attr)
    return value.strip() if isinstance(value, str) else ''


def parse_json_ld(soup: BeautifulSoup) -> dict[str, Any] | None:
    """
    Returns the first JSON-LD object whose @type mentions "article", if any.
    """
    for script in soup.select('script[type="application/ld+json"]'):
        try:
            data: object = json.loads(script.get_text().strip())
        except ValueError:
            continue
        candidates: list[object] = data if isinstance(data, list) else [data]
        for candidate in candidates:
            if not isinstance(candidate, dict) or not candidate.get('@type'):
                continue
            types = candidate['@type'] if isinstance(candidate['@type'], list) else [candidate['@type']]
            if any('article' in str(t).lower() for t in types):
                return candidate
    return None


def _json_ld_author(json_ld: dict[str, Any] | None) -> str:
    if not json_ld:
        return ''
    author: object = json_ld.get('author')
    if isinstance(author, list):
        return ', '.join(a['name'] for a in author if isinstance(a, dict) and a.get('name'))
    if isinstance(author, dict):
        return str(author.get('name') or '')
    return ''


def extract_metadata(soup: BeautifulSoup, listing_record: dict[str, Any]) -> dict[str, str]:
    """
    Collects title/date/author/subtitle, preferring the page and falling back to the listing record.
    """
    json_ld: dict[str, Any] | None = parse_json_ld(soup)
    title: str = (
        _text_of(soup, 'h1')
        or _attr_of(soup, 'meta[property="og:title"]', 'content')
        or str(listing_record.get('title') or '').strip()
        or 'Untitled'
    )
    date_raw: str = (
        str((json_ld or {}).get('datePublished') or (json_ld or {}).get('dateCreated') or '')
        or _attr_of(soup, 'meta[property="article:published_time"]', 'content')
        or _attr_of(soup, 'time', 'datetime')
        or next((str(listing_record[f]) for f in LISTING_DATE_FIELDS if listing_record.get(f)), '')
    )
    author: str = _attr_of(soup, 'meta[name="author"]', 'content') or _json_ld_author(json_ld)
    subtitle: str = _text_of(soup, 'h3') or _attr_of(soup, 'meta[property="og:description"]', 'content')
    return {'title': title, 'date_raw': date_raw, 'author': author, 'subtitle': subtitle}


def find_content_element(soup: BeautifulSoup) -> Tag | None:
    """
    Locates the article body and strips navigation, subscribe prompts and share widgets from it.
    Iframes are replaced with a plain link so embedded media survives the Markdown conversion.
    """
    el: Tag | None = None
    for selector in CONTENT_SELECTORS:
        el = soup.select_one(selector)
        if el is not None:
            break
    if el is None:
        return None
    for junk in el.select(', '.join(JUNK_SELECTORS)):
        junk.decompose()
    for iframe in el.select('iframe'):
        src = iframe.get('src')
        if isinstance(src, str) and src:
            p = soup.new_tag('p')
            a = soup.new_tag('a', href=src)
            a.string = 'Embedded content'
            p.append(a)
            iframe.replace_with(p)
        else:
            iframe.decompose()
    return el


class PostMarkdownConverter(MarkdownConverter):
    """
    markdownify converter for post bodies: ATX headings, `-` bullets, fenced code and GFM tables.
    Figure captions render as an italic line under the image.
    """

    def __init__(self, **options: Any) -> None:
        options.setdefault('heading_style', ATX)
        options.setdefault('bullets', '-')
        options.setdefault('table_infer_header', True)
        super().__init__(**options)

    def convert_figcaption(self, el: Tag, text: str, parent_tags: set[str]) -> str:
        caption: str = text.strip()
        return f'\n\n*{caption}*\n\n' if caption else ''


def cleanup_markdown(md: str) -> str:
    md = md.replace('\r\n', '\n')
    md = re.sub(r'\n{3,}', '\n\n', md)
    md = re.sub(r'[ \t]+\n', '\n', md)
    return md.strip() + '\n'


def to_markdown(el: Tag, url: str) -> str:
    """
    Converts the whole content element to Markdown with markdownify.
    If that comes out empty, trafilatura gets a pass at the element, then plain paragraph text.
    """
    md: str | None = PostMarkdownConverter().convert(str(el))
    if not md or not md.strip():
        log.debug(f'markdownify returned nothing for ``{url}``; trying trafilatura')
        md = trafilatura.extract(
            str(el),
            url=url,
            output_format='markdown',
            include_formatting=True,
            include_links=True,
            include_images=True,
            include_tables=True,
            favor_recall=True,
        )
    if not md:
        log.debug(f'trafilatura returned nothing for ``{url}``; using plain text')
        md = el.get_text(separator='\n\n', strip=True)
    return cleanup_markdown(md)


def extract_post(html: str, url: str, listing_record: dict[str, Any] | None = None) -> PostDocument:
    """
    Parses one post page. Raises ExtractionError when no body element exists.
    Called by: ArchiveExporter.fetch_post()
    """
    soup = BeautifulSoup(html, 'html.parser')
    meta: dict[str, str] = extract_metadata(soup, listing_record or {})
    content_el: Tag | None = find_content_element(soup)
    if content_el is None:
        raise ExtractionError(url)
    return PostDocument(
        title=meta['title'],
        author=meta['author'],
        published_date_raw=meta['date_raw'],
        subtitle=meta['subtitle'],
        body_markdown=to_markdown(content_el, url),
        url=url,
    )


def render_post(post: PostDocument, *, front_matter: bool = False) -> str:
    """
    Renders the exported Markdown document for one post, ending with a horizontal-rule separator
    so batch parts read as one continuous file.
    """

    def quoted(s: str) -> str:
        return str(s or '').replace('"', '\\"')

    out: str = ''
    if front_matter:
        out += '---\n'
        out += f'title: "{quoted(post.title)}"\n'
        if post.published_date_raw:
            out += f'date: "{quoted(post.published_date_raw)}"\n'
        if post.author:
            out += f'author: "{quoted(post.author)}"\n'
        out += f'url: "{quoted(post.url)}"\n'
        out += '---\n\n'
    out += f'# {post.title}\n\n'
    if post.subtitle:
        out += f'> {post.subtitle}\n\n'
    if post.published_date_raw:
        out += f'- Date: {post.published_date_raw}\n'
    if post.author:
        out += f'- Author: {post.author}\n'
    out += f'- Link: {post.url}\n\n'
    out += post.body_markdown
    out += '\n\n---\n\n'
    return out
