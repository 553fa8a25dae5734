from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable

from bs4 import BeautifulSoup
from bs4.element import Comment, Declaration, Doctype, NavigableString, ProcessingInstruction, Tag
from markdown_it import MarkdownIt

from .blocks import (
    Block,
    BulletItem,
    Gallery,
    GalleryImage,
    InlineImage,
    OrderedItem,
    Paragraph,
    Run,
    strip_control_chars,
)


logger = logging.getLogger(__name__)

_MARKUP_RE = re.compile(r'<\s*/?\s*[A-Za-z][^>]*>')
_WHITESPACE_RE = re.compile(r'\s+')
_MULTI_SPACE_RE = re.compile(r' {2,}')
_BREAK_PADDING_RE = re.compile(r' *\n *')
_CSS_DECLARATION_RE = re.compile(r'([a-zA-Z-]+)\s*:\s*([^;]+)')

_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)
_IGNORED_TAGS = {'script', 'style', 'head', 'title', 'meta', 'link', 'noscript', 'template'}
_BOLD_TAGS = {'strong', 'b'}
_ITALIC_TAGS = {'em', 'i'}
_UNDERLINE_TAGS = {'u', 'ins'}
_INLINE_TAGS = _BOLD_TAGS | _ITALIC_TAGS | _UNDERLINE_TAGS | {
    'a',
    'abbr',
    'big',
    'code',
    'del',
    'font',
    'kbd',
    'label',
    'mark',
    's',
    'samp',
    'small',
    'span',
    'strike',
    'sub',
    'sup',
    'time',
    'var',
}
_HEADING_TAGS = {'h1', 'h2', 'h3', 'h4', 'h5', 'h6'}
_PARAGRAPH_TAGS = {'p'} | _HEADING_TAGS
_CONTAINER_TAGS = {'div', 'section', 'article', 'main', 'body', 'html', 'header', 'footer'}

MIN_IMAGE_WIDTH_PERCENT = 20
MAX_IMAGE_WIDTH_PERCENT = 100
DEFAULT_GALLERY_COLUMNS = 2

_MARKDOWN_PARSER: MarkdownIt | None = None


@dataclass(frozen=True)
class StyleState:
    bold: bool = False
    italic: bool = False
    underline: bool = False

    def enter(self, tag: Tag) -> StyleState:
        name = (tag.name or '').lower()
        state = self
        if name in _BOLD_TAGS or name in _HEADING_TAGS:
            state = replace(state, bold=True)
        if name in _ITALIC_TAGS:
            state = replace(state, italic=True)
        if name in _UNDERLINE_TAGS:
            state = replace(state, underline=True)
        css = tag.get('style')
        if isinstance(css, str) and css.strip():
            state = state._with_css(css)
        return state

    def _with_css(self, css: str) -> StyleState:
        state = self
        for prop, raw_value in _CSS_DECLARATION_RE.findall(css):
            prop = prop.strip().lower()
            value = raw_value.strip().lower()
            if prop == 'font-weight':
                if value in {'bold', 'bolder'}:
                    state = replace(state, bold=True)
                elif value in {'normal', 'lighter'}:
                    state = replace(state, bold=False)
                elif value.isdigit():
                    state = replace(state, bold=int(value) >= 600)
            elif prop == 'font-style':
                if value in {'italic', 'oblique'}:
                    state = replace(state, italic=True)
                elif value == 'normal':
                    state = replace(state, italic=False)
            elif prop in {'text-decoration', 'text-decoration-line'}:
                if 'underline' in value:
                    state = replace(state, underline=True)
                elif value == 'none':
                    state = replace(state, underline=False)
        return state

    def run(self, text: str) -> Run:
        return Run(text=text, bold=self.bold, italic=self.italic, underline=self.underline)


RunsFactory = Callable[[tuple[Run, ...]], Block]


class _RunCollector:
    """Accumulates inline runs and emits them as one block per flush.

    ``first`` builds the first emitted block and ``rest`` every later one, so a
    list item split by an inline image continues as a plain paragraph instead of
    repeating its bullet.
    """

    def __init__(
        self,
        out: list[Block],
        first: RunsFactory,
        *,
        rest: RunsFactory | None = None,
        absorbs_paragraphs: bool = False,
    ):
        self.out = out
        self.first = first
        self.rest = rest or first
        self.absorbs_paragraphs = absorbs_paragraphs
        self.runs: list[Run] = []
        self.emitted = False

    def add_text(self, text: str, style: StyleState) -> None:
        token = _WHITESPACE_RE.sub(' ', strip_control_chars(text))
        if token:
            self.runs.append(style.run(token))

    def add_break(self, style: StyleState) -> None:
        self.runs.append(style.run('\n'))

    def add_soft_break(self) -> None:
        if any(run.text.strip() for run in self.runs):
            self.runs.append(Run('\n'))

    def add_block(self, block: Block | None) -> None:
        self.flush()
        if block is not None:
            self.out.append(block)

    def flush(self) -> None:
        runs = normalize_runs(self.runs)
        self.runs = []
        if not runs:
            return
        factory = self.rest if self.emitted else self.first
        self.out.append(factory(runs))
        self.emitted = True


def normalize_runs(runs: Iterable[Run]) -> tuple[Run, ...]:
    """Collapse HTML whitespace across run boundaries and merge same-style neighbours."""
    cleaned: list[Run] = []
    at_line_start = True
    for run in runs:
        text = _BREAK_PADDING_RE.sub('\n', _MULTI_SPACE_RE.sub(' ', run.text))
        if at_line_start:
            text = text.lstrip(' ')
        if not text:
            continue
        if text.startswith('\n') and cleaned and cleaned[-1].text.endswith(' '):
            trimmed = cleaned[-1].text.rstrip(' ')
            if trimmed:
                cleaned[-1] = replace(cleaned[-1], text=trimmed)
            else:
                cleaned.pop()
        at_line_start = text.endswith((' ', '\n'))
        cleaned.append(replace(run, text=text))

    while cleaned:
        text = cleaned[-1].text.rstrip(' \n')
        if text:
            cleaned[-1] = replace(cleaned[-1], text=text)
            break
        cleaned.pop()
    while cleaned:
        text = cleaned[0].text.lstrip(' \n')
        if text:
            cleaned[0] = replace(cleaned[0], text=text)
            break
        cleaned.pop(0)

    merged: list[Run] = []
    for run in cleaned:
        if merged and merged[-1].same_style(run):
            merged[-1] = replace(merged[-1], text=merged[-1].text + run.text)
        else:
            merged.append(run)
    if not ''.join(run.text for run in merged).strip():
        return ()
    return tuple(merged)


def _attr(tag: Tag, *names: str) -> str:
    for name in names:
        value = tag.get(name)
        if isinstance(value, list):
            value = ' '.join(value)
        token = strip_control_chars(str(value or '')).strip()
        if token:
            return token
    return ''


def parse_width_percent(value: Any) -> int:
    token = str(value or '').strip().rstrip('%').strip()
    if not token:
        return MAX_IMAGE_WIDTH_PERCENT
    try:
        number = float(token)
    except ValueError:
        return MAX_IMAGE_WIDTH_PERCENT
    if not math.isfinite(number):
        return MAX_IMAGE_WIDTH_PERCENT
    return int(min(MAX_IMAGE_WIDTH_PERCENT, max(MIN_IMAGE_WIDTH_PERCENT, round(number))))


def parse_columns(value: Any) -> int:
    token = str(value or '').strip()
    if not token:
        return DEFAULT_GALLERY_COLUMNS
    try:
        number = float(token)
    except ValueError:
        return DEFAULT_GALLERY_COLUMNS
    if not math.isfinite(number):
        return DEFAULT_GALLERY_COLUMNS
    return max(1, int(number))


def _image_block(tag: Tag, *, caption: str | None = None) -> InlineImage | None:
    src = _attr(tag, 'src', 'data-src')
    if not src:
        return None
    resolved_caption = caption or _attr(tag, 'data-caption', 'caption', 'title') or None
    return InlineImage(
        src=src,
        caption=resolved_caption,
        width_percent=parse_width_percent(_attr(tag, 'data-width', 'width')),
    )


def _gallery_block(tag: Tag) -> Gallery | None:
    raw = _attr(tag, 'data-gallery')
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug('unparsable data-gallery attribute: %r', raw[:120])
        return None
    if isinstance(items, dict):
        items = items.get('images')
    if not isinstance(items, list):
        return None

    images: list[GalleryImage] = []
    for item in items:
        if isinstance(item, str):
            src, caption = item, ''
        elif isinstance(item, dict):
            src = item.get('src') or item.get('url')
            caption = item.get('caption') or ''
        else:
            continue
        src = strip_control_chars(str(src or '')).strip()
        if src:
            images.append(GalleryImage(src=src, caption=strip_control_chars(str(caption)).strip()))
    if not images:
        return None
    return Gallery(images=tuple(images), columns=parse_columns(_attr(tag, 'data-columns')))


def _plain_paragraph(text: str) -> Paragraph | None:
    token = _WHITESPACE_RE.sub(' ', strip_control_chars(text)).strip()
    if not token:
        return None
    return Paragraph(runs=(Run(token),))


def _walk_figure(tag: Tag, style: StyleState, collector: _RunCollector) -> None:
    if tag.has_attr('data-gallery'):
        collector.add_block(_gallery_block(tag) or _plain_paragraph(tag.get_text(' ')))
        return
    image = tag.find('img')
    if not isinstance(image, Tag):
        collector.add_block(_plain_paragraph(tag.get_text(' ')))
        return
    figcaption = tag.find('figcaption')
    caption = ''
    if isinstance(figcaption, Tag):
        caption = _WHITESPACE_RE.sub(' ', strip_control_chars(figcaption.get_text(' '))).strip()
    collector.add_block(_image_block(image, caption=caption or None))


def _walk_list(tag: Tag, style: StyleState, out: list[Block], *, ordered: bool) -> None:
    index = 0
    for child in tag.children:
        if isinstance(child, _SKIPPED_STRINGS):
            continue
        if isinstance(child, NavigableString):
            text = str(child)
            if not text.strip():
                continue
            index += 1
            _emit_list_text(text, style, out, ordered=ordered, index=index)
            continue
        if not isinstance(child, Tag):
            continue
        name = (child.name or '').lower()
        if name in {'ul', 'ol'}:
            _walk_list(child, style.enter(child), out, ordered=name == 'ol')
            continue
        index += 1
        _walk_list_item(child, style, out, ordered=ordered, index=index)


def _item_factory(*, ordered: bool, index: int) -> RunsFactory:
    if ordered:
        return lambda runs: OrderedItem(index=index, runs=runs)
    return lambda runs: BulletItem(runs=runs)


def _emit_list_text(text: str, style: StyleState, out: list[Block], *, ordered: bool, index: int) -> None:
    collector = _RunCollector(out, _item_factory(ordered=ordered, index=index), rest=Paragraph)
    collector.add_text(text, style)
    collector.flush()


def _walk_list_item(tag: Tag, style: StyleState, out: list[Block], *, ordered: bool, index: int) -> None:
    collector = _RunCollector(
        out,
        _item_factory(ordered=ordered, index=index),
        rest=Paragraph,
        absorbs_paragraphs=True,
    )
    _collect(tag, style.enter(tag), collector)
    collector.flush()


def _collect(node: Tag, style: StyleState, collector: _RunCollector) -> None:
    for child in node.children:
        if isinstance(child, _SKIPPED_STRINGS):
            continue
        if isinstance(child, NavigableString):
            collector.add_text(str(child), style)
            continue
        if not isinstance(child, Tag):
            continue

        name = (child.name or '').lower()
        if name in _IGNORED_TAGS:
            continue
        if child.has_attr('data-gallery'):
            collector.add_block(_gallery_block(child) or _plain_paragraph(child.get_text(' ')))
            continue
        if name == 'br':
            collector.add_break(style)
            continue
        if name in _INLINE_TAGS:
            _collect(child, style.enter(child), collector)
            continue
        if name == 'img':
            collector.add_block(_image_block(child))
            continue
        if name == 'figure':
            _walk_figure(child, style, collector)
            continue
        if name in {'ul', 'ol'}:
            collector.flush()
            _walk_list(child, style.enter(child), collector.out, ordered=name == 'ol')
            continue
        if name == 'li':
            collector.flush()
            _walk_list_item(child, style, collector.out, ordered=False, index=0)
            continue
        if name in _PARAGRAPH_TAGS or name in _CONTAINER_TAGS:
            inner = style.enter(child)
            if collector.absorbs_paragraphs:
                collector.add_soft_break()
                _collect(child, inner, collector)
                continue
            collector.flush()
            if name in _PARAGRAPH_TAGS:
                paragraph = _RunCollector(collector.out, Paragraph)
                _collect(child, inner, paragraph)
                paragraph.flush()
            else:
                _collect(child, inner, collector)
                collector.flush()
            continue

        collector.add_block(_plain_paragraph(child.get_text(' ')))


def _plain_text_blocks(text: str) -> list[Block]:
    blocks: list[Block] = []
    for line in text.splitlines():
        paragraph = _plain_paragraph(line)
        if paragraph is not None:
            blocks.append(paragraph)
    return blocks


def parse(markup: str | None) -> list[Block]:
    """Parse editor markup into semantic blocks.

    Never raises for degenerate input and never returns an empty list: empty
    markup yields a single empty :class:`Paragraph`.
    """
    source = str(markup or '')
    if not source.strip():
        return [Paragraph()]

    blocks: list[Block] = []
    if _MARKUP_RE.search(source) is None:
        blocks = _plain_text_blocks(source)
    else:
        soup = BeautifulSoup(source, 'html.parser')
        collector = _RunCollector(blocks, Paragraph)
        _collect(soup, StyleState(), collector)
        collector.flush()
    return blocks or [Paragraph()]


def _markdown_parser() -> MarkdownIt:
    global _MARKDOWN_PARSER
    if _MARKDOWN_PARSER is None:
        _MARKDOWN_PARSER = MarkdownIt('commonmark', {'typographer': False}).enable(['table', 'strikethrough'])
    return _MARKDOWN_PARSER


def parse_markdown(text: str | None) -> list[Block]:
    source = str(text or '')
    if not source.strip():
        return [Paragraph()]
    return parse(_markdown_parser().render(source))


def parse_narrative(text: str | None, *, markup_format: str = 'html') -> list[Block]:
    if markup_format == 'markdown':
        return parse_markdown(text)
    return parse(text)
