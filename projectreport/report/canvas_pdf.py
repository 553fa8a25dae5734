from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Sequence, Union

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.pdfgen import canvas

from ..adapters.image_cache import ImageHandle
from ..config import Settings
from .blocks import Block, BulletItem, Gallery, InlineImage, OrderedItem, Paragraph, Run
from .header_footer import HeaderFooterConfig
from .story import (
    ActivityList,
    CoverPage,
    DataTable,
    FieldList,
    Heading,
    PhotoAttachments,
    ReportStory,
    RichText,
    SectionBreak,
    Signature,
    StoryElement,
)


logger = logging.getLogger(__name__)

PAGE_WIDTH_MM = A4[0] / mm
PAGE_HEIGHT_MM = A4[1] / mm
PT_MM = 25.4 / 72.0
EPSILON = 1e-6

PHOTO_ASPECT = 0.75
PHOTO_COLUMN_GAP_MM = 10.0
PHOTO_ROW_GAP_MM = 6.0
MAX_GRID_COLUMNS = 4
CAPTION_LINE_MM = 5.0
CAPTION_GAP_MM = 2.0
PHOTO_LABEL = 'Photo'

PARAGRAPH_GAP_MM = 2.0
LIST_ITEM_GAP_MM = 1.0
BULLET_OFFSET_MM = 8.0
LIST_TEXT_OFFSET_MM = 12.0
MIN_LINES_TOGETHER = 2

TABLE_LINE_MM = 5.0
TABLE_PADDING_MM = 2.0

SIGNATURE_BLOCK_MM = 55.0
SIGNATURE_LINE_WIDTH_MM = 80.0

HEADER_TEXT_SIZE = 9.0
HEADER_CONTENT_GAP_MM = 5.0
DEFAULT_LOGO_GAP_MM = 5.0
PAGE_NUMBER_BASELINE_MM = 15.0
FOOTER_SEPARATOR_FROM_BOTTOM_MM = 15.0
FOOTER_BOTTOM_CLEARANCE_MM = 5.0
FOOTER_CONTENT_GAP_MM = 2.0

Color = tuple[float, float, float]
BLACK: Color = (0.0, 0.0, 0.0)
FOOTER_GRAY: Color = (80 / 255, 80 / 255, 80 / 255)
RULE_GRAY: Color = (180 / 255, 180 / 255, 180 / 255)
TABLE_HEADER_FILL: Color = (224 / 255, 224 / 255, 224 / 255)

ImageLookup = Callable[[str], Union[ImageHandle, None]]

_TOKEN_RE = re.compile(r'\n|[^\S\n]+|\S+')


FONT_FILE_SETTINGS = (
    'pdf_font_file_regular',
    'pdf_font_file_bold',
    'pdf_font_file_italic',
    'pdf_font_file_bold_italic',
)


def _register_ttf_font(font_name: str, font_path: Path) -> bool:
    if font_name in pdfmetrics.getRegisteredFontNames():
        return True
    try:
        pdfmetrics.registerFont(TTFont(font_name, str(font_path)))
        return True
    except Exception as exc:
        logger.warning('Failed to register PDF font %s from %s: %s', font_name, font_path, exc)
        return False


def _register_cid_font(font_name: str) -> bool:
    if font_name in pdfmetrics.getRegisteredFontNames():
        return True
    try:
        pdfmetrics.registerFont(UnicodeCIDFont(font_name))
        return True
    except Exception as exc:
        logger.warning('Failed to register fallback PDF font %s: %s', font_name, exc)
        return False


def resolve_pdf_fonts(settings: Settings) -> tuple[str, str, str, str]:
    """Font names for regular, bold, italic and bold italic text.

    A configured TrueType regular face wins; styles without their own file
    reuse it. Otherwise the CID fallback, then the built-in Type 1 fonts.
    """
    paths = [getattr(settings, name) for name in FONT_FILE_SETTINGS]
    regular = paths[0]
    if regular is not None and _register_ttf_font(Path(regular).stem, Path(regular)):
        names = []
        for path in paths:
            if path is not None and _register_ttf_font(Path(path).stem, Path(path)):
                names.append(Path(path).stem)
            else:
                names.append(Path(regular).stem)
        return names[0], names[1], names[2], names[3]

    fallback = settings.pdf_cid_fallback_font.strip()
    if fallback and _register_cid_font(fallback):
        return fallback, fallback, fallback, fallback

    return (
        settings.pdf_font_regular,
        settings.pdf_font_bold,
        settings.pdf_font_italic,
        settings.pdf_font_bold_italic,
    )


@dataclass(frozen=True)
class PageMetrics:
    page_width_mm: float = PAGE_WIDTH_MM
    page_height_mm: float = PAGE_HEIGHT_MM
    margin_left_mm: float = 30.0
    margin_right_mm: float = 20.0
    margin_top_mm: float = 30.0
    margin_bottom_mm: float = 20.0
    line_height_mm: float = 7.2
    paragraph_indent_mm: float = 12.5
    body_font_size: float = 12.0
    caption_font_size: float = 10.0
    title_font_size: float = 16.0
    font_regular: str = 'Times-Roman'
    font_bold: str = 'Times-Bold'
    font_italic: str = 'Times-Italic'
    font_bold_italic: str = 'Times-BoldItalic'
    page_number_style: str = 'number'

    @classmethod
    def from_settings(cls, settings: Settings) -> PageMetrics:
        regular, bold, italic, bold_italic = resolve_pdf_fonts(settings)
        return cls(
            margin_left_mm=settings.page_margin_left_mm,
            margin_right_mm=settings.page_margin_right_mm,
            margin_top_mm=settings.page_margin_top_mm,
            margin_bottom_mm=settings.page_margin_bottom_mm,
            line_height_mm=settings.pdf_line_height_mm,
            paragraph_indent_mm=settings.paragraph_indent_mm,
            body_font_size=settings.pdf_body_font_size,
            caption_font_size=settings.pdf_caption_font_size,
            title_font_size=settings.pdf_title_font_size,
            font_regular=regular,
            font_bold=bold,
            font_italic=italic,
            font_bold_italic=bold_italic,
            page_number_style=settings.page_number_style,
        )

    @property
    def content_width_mm(self) -> float:
        return self.page_width_mm - self.margin_left_mm - self.margin_right_mm

    @property
    def content_right_mm(self) -> float:
        return self.page_width_mm - self.margin_right_mm

    def font(self, *, bold: bool = False, italic: bool = False) -> str:
        if bold and italic:
            return self.font_bold_italic
        if bold:
            return self.font_bold
        if italic:
            return self.font_italic
        return self.font_regular


@dataclass(frozen=True)
class TextStyle:
    font: str
    size: float
    underline: bool = False


@dataclass(frozen=True)
class Segment:
    text: str
    style: TextStyle
    width_mm: float


@dataclass(frozen=True)
class TextLine:
    segments: tuple[Segment, ...] = ()

    @property
    def width_mm(self) -> float:
        return sum(segment.width_mm for segment in self.segments)

    @property
    def text(self) -> str:
        return ''.join(segment.text for segment in self.segments)


def text_width_mm(text: str, style: TextStyle) -> float:
    return pdfmetrics.stringWidth(text, style.font, style.size) / mm


class _LineBuilder:
    def __init__(self, width_mm: float, first_width_mm: float | None = None):
        self.width_mm = max(1.0, width_mm)
        self.first_width_mm = max(1.0, first_width_mm if first_width_mm is not None else width_mm)
        self.lines: list[TextLine] = []
        self.segments: list[Segment] = []
        self.line_width = 0.0
        self.pending_space: TextStyle | None = None

    @property
    def limit(self) -> float:
        return self.width_mm if self.lines else self.first_width_mm

    def _append(self, text: str, style: TextStyle) -> None:
        width = text_width_mm(text, style)
        if self.segments and self.segments[-1].style == style:
            merged = self.segments[-1].text + text
            self.segments[-1] = Segment(merged, style, text_width_mm(merged, style))
        else:
            self.segments.append(Segment(text, style, width))
        self.line_width += width

    def end_line(self) -> None:
        self.lines.append(TextLine(tuple(self.segments)))
        self.segments = []
        self.line_width = 0.0
        self.pending_space = None

    def add_space(self, style: TextStyle) -> None:
        if self.segments:
            self.pending_space = style

    def add_word(self, word: str, style: TextStyle) -> None:
        word_width = text_width_mm(word, style)
        space_width = 0.0
        if self.pending_space is not None and self.segments:
            space_width = text_width_mm(' ', self.pending_space)
        if self.segments and self.line_width + space_width + word_width > self.limit + EPSILON:
            self.end_line()
            space_width = 0.0
        if not self.segments and word_width > self.limit + EPSILON:
            self._add_long_word(word, style)
            return
        if space_width and self.pending_space is not None:
            self._append(' ', self.pending_space)
        self.pending_space = None
        self._append(word, style)

    def _add_long_word(self, word: str, style: TextStyle) -> None:
        chunk = ''
        for char in word:
            candidate = chunk + char
            if chunk and text_width_mm(candidate, style) > self.limit + EPSILON:
                self._append(chunk, style)
                self.end_line()
                chunk = char
            else:
                chunk = candidate
        if chunk:
            self._append(chunk, style)

    def finish(self) -> list[TextLine]:
        if self.segments or not self.lines:
            self.end_line()
        return self.lines


def wrap_text(
    pieces: Iterable[tuple[str, TextStyle]],
    *,
    width_mm: float,
    first_width_mm: float | None = None,
) -> list[TextLine]:
    """Greedy word wrap of styled text; ``\\n`` forces a line break."""
    builder = _LineBuilder(width_mm, first_width_mm)
    for text, style in pieces:
        for token in _TOKEN_RE.findall(text):
            if token == '\n':
                builder.end_line()
            elif token.isspace():
                builder.add_space(style)
            else:
                builder.add_word(token, style)
    return builder.finish()


@dataclass(frozen=True)
class TextOp:
    x: float
    y: float
    text: str
    font: str
    size: float
    color: Color = BLACK


@dataclass(frozen=True)
class ImageOp:
    x: float
    y: float
    width: float
    height: float
    image: ImageHandle = field(repr=False, compare=False)
    source_url: str = ''


@dataclass(frozen=True)
class LineOp:
    x1: float
    y1: float
    x2: float
    y2: float
    width: float = 0.5
    color: Color = BLACK


@dataclass(frozen=True)
class RectOp:
    x: float
    y: float
    width: float
    height: float
    fill: Color | None = None
    stroke: Color | None = None


DrawOp = Union[TextOp, ImageOp, LineOp, RectOp]


@dataclass
class CanvasPage:
    """One laid-out page. Coordinates are millimetres from the top-left corner."""

    index: int
    ops: list[DrawOp] = field(default_factory=list)
    is_cover: bool = False
    has_content: bool = False

    def texts(self) -> list[str]:
        return [op.text for op in self.ops if isinstance(op, TextOp)]

    def images(self) -> list[ImageOp]:
        return [op for op in self.ops if isinstance(op, ImageOp)]

    def text(self) -> str:
        return '\n'.join(self.texts())


@dataclass
class PageCursor:
    current_y: float
    page_index: int = 0

    def advance(self, amount: float) -> None:
        if amount < 0:
            raise ValueError('cursor can only move down within a page')
        self.current_y += amount

    def reset(self, top_y: float, page_index: int) -> None:
        self.current_y = top_y
        self.page_index = page_index


class CanvasRenderer:
    """Lays a :class:`ReportStory` out on fixed A4 pages.

    Every unit is measured before it is placed; a unit that does not fit below
    the cursor moves to a new page. Footers and page numbers are stamped in a
    second pass once the page count is known.
    """

    def __init__(
        self,
        header_footer: HeaderFooterConfig,
        images: ImageLookup,
        metrics: PageMetrics | None = None,
    ):
        self.header_footer = header_footer
        self.images = images
        self.metrics = metrics or PageMetrics()

        self.header_band = self._measure_header_band()
        self.content_top_mm = self.metrics.margin_top_mm
        if self.header_band is not None:
            self.content_top_mm = max(self.content_top_mm, self.header_band[1] + HEADER_CONTENT_GAP_MM)

        self.footer_separator_mm, self.footer_baselines = self._measure_footer()
        self.max_y_mm = self.metrics.page_height_mm - self.metrics.margin_bottom_mm
        if self.footer_separator_mm is not None:
            self.max_y_mm = min(self.max_y_mm, self.footer_separator_mm - FOOTER_CONTENT_GAP_MM)

        self.pages: list[CanvasPage] = []
        self.cursor = PageCursor(self.content_top_mm)

    def _measure_header_band(self) -> tuple[float, float] | None:
        hf = self.header_footer
        if not hf.has_header:
            return None
        top = hf.header_top_padding_mm
        if hf.banner is not None:
            _, height = hf.banner.fit_within(self.metrics.content_width_mm, hf.banner_height_mm)
            return top, top + height
        return top, top + hf.header_height_mm

    def _measure_footer(self) -> tuple[float | None, list[float]]:
        hf = self.header_footer
        if not hf.footer_lines:
            return None, []
        offsets: list[float] = []
        offset = hf.footer_top_spacing_mm
        for index, line in enumerate(hf.footer_lines):
            size_mm = line.font_size * PT_MM
            offset += size_mm if index == 0 else max(hf.footer_line_spacing_mm, size_mm * 1.15)
            offsets.append(offset)
        page_h = self.metrics.page_height_mm
        separator = min(page_h - FOOTER_SEPARATOR_FROM_BOTTOM_MM, page_h - FOOTER_BOTTOM_CLEARANCE_MM - offset)
        return separator, [separator + value for value in offsets]

    @property
    def usable_height_mm(self) -> float:
        return self.max_y_mm - self.content_top_mm

    @property
    def _page(self) -> CanvasPage:
        return self.pages[-1]

    @staticmethod
    def _baseline(top: float, line_height: float, font_size: float) -> float:
        return top + (line_height + font_size * PT_MM * 0.7) / 2

    def _style(self, *, size: float, bold: bool = False, italic: bool = False, underline: bool = False) -> TextStyle:
        return TextStyle(self.metrics.font(bold=bold, italic=italic), size, underline)

    def _pieces(self, runs: Iterable[Run], size: float, *, italic: bool = False) -> list[tuple[str, TextStyle]]:
        return [
            (run.text, self._style(size=size, bold=run.bold, italic=run.italic or italic, underline=run.underline))
            for run in runs
        ]

    def _new_page(self, *, cover: bool = False) -> CanvasPage:
        page = CanvasPage(index=len(self.pages), is_cover=cover)
        self.pages.append(page)
        self.cursor.reset(self.content_top_mm, page.index)
        self._draw_header(page)
        return page

    def _ensure_space(self, height: float) -> None:
        if self.cursor.current_y + height <= self.max_y_mm + EPSILON:
            return
        if not self._page.has_content:
            logger.info('unit of %.1fmm does not fit on an empty page; rendering with overflow', height)
            return
        self._new_page()

    def _emit(self, op: DrawOp, *, content: bool = True) -> None:
        self._page.ops.append(op)
        if content:
            self._page.has_content = True

    def _draw_line(self, line: TextLine, x: float, baseline: float, *, color: Color = BLACK, content: bool = True) -> None:
        for segment in line.segments:
            if segment.text:
                self._emit(
                    TextOp(x, baseline, segment.text, segment.style.font, segment.style.size, color),
                    content=content,
                )
            if segment.style.underline and segment.text.strip():
                self._emit(LineOp(x, baseline + 0.6, x + segment.width_mm, baseline + 0.6, 0.4, color), content=content)
            x += segment.width_mm

    def _aligned_x(self, line: TextLine, *, left: float, width: float, align: str) -> float:
        if align == 'center':
            return left + (width - line.width_mm) / 2
        if align == 'right':
            return left + width - line.width_mm
        return left

    def _draw_lines_here(
        self,
        lines: Sequence[TextLine],
        *,
        line_height: float,
        font_size: float,
        left: float,
        width: float,
        align: str = 'left',
    ) -> None:
        for line in lines:
            top = self.cursor.current_y
            x = self._aligned_x(line, left=left, width=width, align=align)
            self._draw_line(line, x, self._baseline(top, line_height, font_size))
            self.cursor.advance(line_height)

    def _place_text_lines(
        self,
        lines: Sequence[TextLine],
        *,
        line_height: float,
        font_size: float,
        x_first: float,
        x_rest: float,
        prefix: tuple[str, TextStyle, float] | None = None,
        align: str = 'left',
        width: float | None = None,
    ) -> None:
        """Place wrapped lines, splitting across pages while keeping at least two lines together."""
        total = len(lines)
        index = 0
        while index < total:
            remaining = total - index
            available = int((self.max_y_mm - self.cursor.current_y + EPSILON) // line_height)
            if available >= remaining:
                take = remaining
            else:
                take = available
                if remaining - take < MIN_LINES_TOGETHER:
                    take = remaining - MIN_LINES_TOGETHER
                if take < min(MIN_LINES_TOGETHER, remaining):
                    take = 0
                if take <= 0:
                    if self._page.has_content:
                        self._new_page()
                        continue
                    take = max(1, min(remaining, available))
                    logger.info('text block taller than the page area; overflowing')

            for offset in range(take):
                position = index + offset
                line = lines[position]
                top = self.cursor.current_y
                baseline = self._baseline(top, line_height, font_size)
                left = x_first if position == 0 else x_rest
                x = left
                if width is not None:
                    x = self._aligned_x(line, left=left, width=width, align=align)
                if position == 0 and prefix is not None:
                    text, style, prefix_x = prefix
                    self._emit(TextOp(prefix_x, baseline, text, style.font, style.size))
                self._draw_line(line, x, baseline)
                self.cursor.advance(line_height)
            index += take

    def render(self, story: ReportStory) -> list[CanvasPage]:
        self.pages = []
        self._new_page()
        for element in story.elements:
            self._place(element)
        self._stamp_pages()
        return self.pages

    def _place(self, element: StoryElement) -> None:
        if isinstance(element, CoverPage):
            self._place_cover(element)
        elif isinstance(element, Heading):
            self._place_heading(element)
        elif isinstance(element, RichText):
            for block in element.blocks:
                self._place_block(block)
        elif isinstance(element, FieldList):
            self._place_field_list(element)
        elif isinstance(element, ActivityList):
            self._place_activity_list(element)
        elif isinstance(element, DataTable):
            self._place_table(element)
        elif isinstance(element, PhotoAttachments):
            self._place_attachments(element)
        elif isinstance(element, Signature):
            self._place_signature(element)
        elif isinstance(element, SectionBreak):
            if self._page.has_content:
                self._new_page()
        else:
            raise TypeError(f'unsupported story element: {type(element).__name__}')

    def _place_block(self, block: Block) -> None:
        if isinstance(block, Paragraph):
            self._place_paragraph(block.runs)
        elif isinstance(block, BulletItem):
            self._place_list_item(block.runs, '•')
        elif isinstance(block, OrderedItem):
            self._place_list_item(block.runs, f'{block.index}.')
        elif isinstance(block, InlineImage):
            self._place_inline_image(block)
        elif isinstance(block, Gallery):
            items = []
            for image in block.images:
                handle = self.images(image.src)
                if handle is None:
                    logger.warning('skipping unavailable gallery image')
                    continue
                items.append((handle, image.caption))
            if items:
                self._place_photo_grid(items, columns=block.columns)
                self.cursor.advance(PARAGRAPH_GAP_MM)
        else:
            raise TypeError(f'unsupported block: {type(block).__name__}')

    def _place_paragraph(self, runs: tuple[Run, ...]) -> None:
        m = self.metrics
        if not runs:
            self._ensure_space(m.line_height_mm)
            self.cursor.advance(m.line_height_mm)
            return
        lines = wrap_text(
            self._pieces(runs, m.body_font_size),
            width_mm=m.content_width_mm,
            first_width_mm=m.content_width_mm - m.paragraph_indent_mm,
        )
        self._place_text_lines(
            lines,
            line_height=m.line_height_mm,
            font_size=m.body_font_size,
            x_first=m.margin_left_mm + m.paragraph_indent_mm,
            x_rest=m.margin_left_mm,
        )
        self.cursor.advance(PARAGRAPH_GAP_MM)

    def _list_geometry(self, prefix: str) -> tuple[TextStyle, float, float]:
        m = self.metrics
        style = self._style(size=m.body_font_size)
        bullet_x = m.margin_left_mm + BULLET_OFFSET_MM
        text_x = max(m.margin_left_mm + LIST_TEXT_OFFSET_MM, bullet_x + text_width_mm(prefix, style) + 1.5)
        return style, bullet_x, text_x

    def _place_list_item(self, runs: tuple[Run, ...], prefix: str, *, details: str = '') -> None:
        m = self.metrics
        style, bullet_x, text_x = self._list_geometry(prefix)
        width = m.content_right_mm - text_x
        lines = wrap_text(self._pieces(runs, m.body_font_size), width_mm=width)
        self._place_text_lines(
            lines,
            line_height=m.line_height_mm,
            font_size=m.body_font_size,
            x_first=text_x,
            x_rest=text_x,
            prefix=(prefix, style, bullet_x),
        )
        if details.strip():
            detail_lines = wrap_text([(details.strip(), style)], width_mm=width)
            self._place_text_lines(
                detail_lines,
                line_height=m.line_height_mm,
                font_size=m.body_font_size,
                x_first=text_x,
                x_rest=text_x,
            )
        self.cursor.advance(LIST_ITEM_GAP_MM)

    def _place_heading(self, heading: Heading) -> None:
        m = self.metrics
        text = heading.text.strip()
        if not text:
            return
        if heading.level <= 0:
            size = m.title_font_size
            line_height = size * PT_MM * 1.5
            lines = wrap_text([(text, self._style(size=size, bold=True))], width_mm=m.content_width_mm)
            self._ensure_space(line_height * len(lines) + m.line_height_mm)
            self._draw_lines_here(
                lines,
                line_height=line_height,
                font_size=size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
                align='center',
            )
            self.cursor.advance(m.line_height_mm / 2)
            return

        space_before = 4.0 if heading.level == 1 else 2.0
        # heading plus the first line of what follows it
        self._ensure_space(space_before + m.line_height_mm * 2)
        self.cursor.advance(space_before)
        lines = wrap_text([(text, self._style(size=m.body_font_size, bold=True))], width_mm=m.content_width_mm)
        self._place_text_lines(
            lines,
            line_height=m.line_height_mm,
            font_size=m.body_font_size,
            x_first=m.margin_left_mm,
            x_rest=m.margin_left_mm,
        )
        self.cursor.advance(2.0)

    def _place_field_list(self, element: FieldList) -> None:
        m = self.metrics
        for item in element.fields:
            label = item.label.strip().rstrip(':')
            runs = (Run(f'{label}: ', bold=True), Run(item.value.strip() or '-'))
            if element.bulleted:
                self._place_list_item(runs, '•')
                continue
            lines = wrap_text(self._pieces(runs, m.body_font_size), width_mm=m.content_width_mm)
            self._place_text_lines(
                lines,
                line_height=m.line_height_mm,
                font_size=m.body_font_size,
                x_first=m.margin_left_mm,
                x_rest=m.margin_left_mm,
            )
        self.cursor.advance(PARAGRAPH_GAP_MM)

    def _place_activity_list(self, element: ActivityList) -> None:
        if not element.entries:
            return
        m = self.metrics
        self._ensure_space(m.line_height_mm * 2 + PARAGRAPH_GAP_MM)
        self.cursor.advance(PARAGRAPH_GAP_MM)
        label = wrap_text([(element.label, self._style(size=m.body_font_size, bold=True))], width_mm=m.content_width_mm)
        self._place_text_lines(
            label,
            line_height=m.line_height_mm,
            font_size=m.body_font_size,
            x_first=m.margin_left_mm,
            x_rest=m.margin_left_mm,
        )
        for entry in element.entries:
            self._place_list_item((Run(entry.headline),), '•', details=entry.details)

    def _table_cells(self, values: Sequence[str], widths: Sequence[float], *, bold: bool) -> list[list[TextLine]]:
        style = self._style(size=self.metrics.caption_font_size, bold=bold)
        cells = []
        for value, width in zip(values, widths):
            cells.append(wrap_text([(value or '-', style)], width_mm=width - 2 * TABLE_PADDING_MM))
        return cells

    def _draw_table_row(self, cells: list[list[TextLine]], widths: Sequence[float], height: float, *, shaded: bool) -> None:
        m = self.metrics
        top = self.cursor.current_y
        x = m.margin_left_mm
        for width, lines in zip(widths, cells):
            if shaded:
                self._emit(RectOp(x, top, width, height, fill=TABLE_HEADER_FILL))
            self._emit(RectOp(x, top, width, height, stroke=BLACK))
            for index, line in enumerate(lines):
                line_top = top + TABLE_PADDING_MM + index * TABLE_LINE_MM
                self._draw_line(line, x + TABLE_PADDING_MM, self._baseline(line_top, TABLE_LINE_MM, m.caption_font_size))
            x += width
        self.cursor.advance(height)

    @staticmethod
    def _row_height(cells: list[list[TextLine]]) -> float:
        return max((len(lines) for lines in cells), default=1) * TABLE_LINE_MM + 2 * TABLE_PADDING_MM

    def _place_table(self, table: DataTable) -> None:
        if not table.columns:
            return
        m = self.metrics
        widths = [m.content_width_mm * fraction for fraction in table.column_fractions()]
        header = self._table_cells(table.columns, widths, bold=True)
        header_h = self._row_height(header)
        rows = []
        for row in table.rows:
            values = list(row[: len(table.columns)]) + [''] * (len(table.columns) - len(row))
            cells = self._table_cells(values, widths, bold=False)
            rows.append((cells, self._row_height(cells)))

        first_row_h = rows[0][1] if rows else 0.0
        self._ensure_space(header_h + first_row_h)
        self._draw_table_row(header, widths, header_h, shaded=True)
        for cells, height in rows:
            if self.cursor.current_y + height > self.max_y_mm + EPSILON:
                self._new_page()
                self._draw_table_row(header, widths, header_h, shaded=True)
            self._draw_table_row(cells, widths, height, shaded=False)
        self.cursor.advance(PARAGRAPH_GAP_MM * 2)

    def _caption_lines(self, caption: str, width: float) -> list[TextLine]:
        token = str(caption or '').strip()
        if not token:
            return []
        style = self._style(size=self.metrics.caption_font_size, italic=True)
        return wrap_text([(token, style)], width_mm=width)

    @staticmethod
    def _caption_height(lines: Sequence[TextLine]) -> float:
        return CAPTION_GAP_MM + len(lines) * CAPTION_LINE_MM if lines else 0.0

    def _place_inline_image(self, block: InlineImage) -> None:
        m = self.metrics
        handle = self.images(block.src)
        if handle is None:
            logger.warning('skipping unavailable inline image')
            return
        caption_lines = self._caption_lines(block.caption or '', m.content_width_mm)
        caption_h = self._caption_height(caption_lines)
        target_width = m.content_width_mm * block.width_percent / 100.0
        width, height = handle.fit_within(target_width, self.usable_height_mm - caption_h)
        if width < target_width - EPSILON:
            logger.info('inline image scaled to fit the page height')

        self._ensure_space(height + caption_h)
        x = m.margin_left_mm + (m.content_width_mm - width) / 2
        self._emit(ImageOp(x, self.cursor.current_y, width, height, image=handle, source_url=handle.source_url))
        self.cursor.advance(height)
        if caption_lines:
            self.cursor.advance(CAPTION_GAP_MM)
            self._draw_lines_here(
                caption_lines,
                line_height=CAPTION_LINE_MM,
                font_size=m.caption_font_size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
                align='center',
            )
        self.cursor.advance(PARAGRAPH_GAP_MM * 2)

    def _place_photo_grid(
        self,
        items: Sequence[tuple[ImageHandle, str]],
        *,
        columns: int = 2,
        shared_caption: str = '',
    ) -> None:
        """Lay photos out in rows; a short last row spreads over the full width."""
        m = self.metrics
        columns = max(1, min(int(columns), MAX_GRID_COLUMNS))
        rows = [list(items[start:start + columns]) for start in range(0, len(items), columns)]
        shared_lines = self._caption_lines(shared_caption, m.content_width_mm)
        shared_h = self._caption_height(shared_lines)

        for row_index, row in enumerate(rows):
            is_last = row_index == len(rows) - 1
            count = len(row)
            cell_w = (m.content_width_mm - PHOTO_COLUMN_GAP_MM * (count - 1)) / count
            box_h = cell_w * PHOTO_ASPECT
            captions = [[] if shared_lines else self._caption_lines(caption, cell_w) for _, caption in row]
            caption_h = max((self._caption_height(lines) for lines in captions), default=0.0)
            trailing = shared_h if is_last else 0.0

            needed = box_h + caption_h + trailing
            if needed > self.usable_height_mm:
                box_h = max(CAPTION_LINE_MM, self.usable_height_mm - caption_h - trailing)
                logger.info('photo row taller than the page area; scaling photos to %.1fmm', box_h)
                needed = box_h + caption_h + trailing
            self._ensure_space(needed)

            top = self.cursor.current_y
            for column, ((handle, _), lines) in enumerate(zip(row, captions)):
                x = m.margin_left_mm + column * (cell_w + PHOTO_COLUMN_GAP_MM)
                width, height = handle.fit_within(cell_w, box_h)
                self._emit(
                    ImageOp(x + (cell_w - width) / 2, top, width, height, image=handle, source_url=handle.source_url)
                )
                for line_index, line in enumerate(lines):
                    line_top = top + box_h + CAPTION_GAP_MM + line_index * CAPTION_LINE_MM
                    self._draw_line(line, x, self._baseline(line_top, CAPTION_LINE_MM, m.caption_font_size))
            self.cursor.advance(box_h + caption_h)

            if is_last and shared_lines:
                self.cursor.advance(CAPTION_GAP_MM)
                self._draw_lines_here(
                    shared_lines,
                    line_height=CAPTION_LINE_MM,
                    font_size=m.caption_font_size,
                    left=m.margin_left_mm,
                    width=m.content_width_mm,
                    align='center',
                )
            self.cursor.advance(PHOTO_ROW_GAP_MM)

    def _place_attachments(self, element: PhotoAttachments) -> None:
        if element.photo_count == 0:
            return
        m = self.metrics
        resolved = []
        for cluster in element.clusters:
            kept = []
            for photo in cluster.photos:
                handle = self.images(photo.src)
                if handle is None:
                    logger.warning('skipping unavailable photo in %r', element.title)
                    continue
                kept.append((handle, photo))
            resolved.append((cluster, kept))

        if element.new_page and self._page.has_content:
            self._new_page()
        if element.title.strip():
            self._ensure_space(m.line_height_mm * 2 + 4.0)
            lines = wrap_text(
                [(element.title.strip(), self._style(size=m.body_font_size, bold=True))],
                width_mm=m.content_width_mm,
            )
            self._draw_lines_here(
                lines,
                line_height=m.line_height_mm,
                font_size=m.body_font_size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
            )
            self.cursor.advance(4.0)

        number = 0
        for cluster, kept in resolved:
            if not kept:
                continue
            items = []
            for handle, photo in kept:
                number += 1
                caption = f'{PHOTO_LABEL} {number}: {photo.caption}' if photo.caption else f'{PHOTO_LABEL} {number}'
                items.append((handle, '' if cluster.grouped else caption))
            self._place_photo_grid(items, shared_caption=cluster.shared_caption if cluster.grouped else '')

    def _place_signature(self, signature: Signature) -> None:
        m = self.metrics
        center = m.page_width_mm / 2
        body = self._style(size=m.body_font_size)
        self.cursor.advance(m.line_height_mm)
        self._ensure_space(SIGNATURE_BLOCK_MM)

        if signature.place_date.strip():
            lines = wrap_text([(signature.place_date.strip(), body)], width_mm=m.content_width_mm)
            self._draw_lines_here(
                lines,
                line_height=m.line_height_mm,
                font_size=m.body_font_size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
            )
        self.cursor.advance(m.line_height_mm * 2)

        y = self.cursor.current_y
        half = SIGNATURE_LINE_WIDTH_MM / 2
        self._emit(LineOp(center - half, y, center + half, y, 0.5))
        self.cursor.advance(1.5)

        rows: list[list[tuple[str, TextStyle]]] = [[(signature.label, body)]]
        if signature.name.strip():
            rows.append([(signature.name.strip(), self._style(size=m.body_font_size, bold=True))])
        for extra in signature.extras:
            rows.append(
                [
                    (f'{extra.label.strip().rstrip(":")}: ', self._style(size=m.body_font_size, bold=True)),
                    (extra.value.strip() or '-', body),
                ]
            )
        for pieces in rows:
            lines = wrap_text(pieces, width_mm=m.content_width_mm)
            self._draw_lines_here(
                lines,
                line_height=m.line_height_mm,
                font_size=m.body_font_size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
                align='center',
            )

    def _place_cover(self, cover: CoverPage) -> None:
        m = self.metrics
        if self._page.has_content:
            self._new_page()
        self._page.is_cover = True
        self._page.has_content = True
        target = m.page_height_mm / 2 - 40
        if self.cursor.current_y < target:
            self.cursor.advance(target - self.cursor.current_y)

        def centered(text: str, size: float, *, bold: bool, line_height: float) -> None:
            if not text.strip():
                return
            lines = wrap_text([(text.strip(), self._style(size=size, bold=bold))], width_mm=m.content_width_mm)
            self._draw_lines_here(
                lines,
                line_height=line_height,
                font_size=size,
                left=m.margin_left_mm,
                width=m.content_width_mm,
                align='center',
            )

        centered(cover.title.upper(), m.title_font_size, bold=True, line_height=m.line_height_mm * 1.2)
        centered(cover.subtitle, m.body_font_size, bold=False, line_height=m.line_height_mm)
        self.cursor.advance(m.line_height_mm)
        centered(cover.project_name.upper(), 14, bold=True, line_height=m.line_height_mm + 2)
        self.cursor.advance(m.line_height_mm)
        for line in cover.lines:
            centered(line, m.body_font_size, bold=False, line_height=m.line_height_mm)
        self.cursor.advance(m.line_height_mm * 2)
        centered(cover.organization, 14, bold=True, line_height=m.line_height_mm)
        self._new_page()

    def _draw_header(self, page: CanvasPage) -> None:
        if self.header_band is None:
            return
        hf = self.header_footer
        m = self.metrics
        top, bottom = self.header_band
        if hf.banner is not None:
            width, height = hf.banner.fit_within(m.content_width_mm, hf.banner_height_mm)
            x = m.margin_left_mm + (m.content_width_mm - width) / 2
            page.ops.append(ImageOp(x, top, width, height, image=hf.banner, source_url=hf.banner.source_url))
            return

        band_h = bottom - top
        placed = []
        for logo in hf.logos:
            width, height = logo.image.fit_within(logo.width_mm, band_h if band_h > 0 else None)
            placed.append((logo, width, height))
        for (logo, width, height), x in zip(placed, self._logo_positions([w for _, w, _ in placed])):
            y = top + max(0.0, (band_h - height) / 2)
            page.ops.append(ImageOp(x, y, width, height, image=logo.image, source_url=logo.image.source_url))

        style = self._style(size=HEADER_TEXT_SIZE)
        baseline = self._baseline(top, band_h, HEADER_TEXT_SIZE)
        if hf.header_left_text:
            page.ops.append(TextOp(m.margin_left_mm, baseline, hf.header_left_text, style.font, style.size, FOOTER_GRAY))
        if hf.header_right_text:
            x = m.content_right_mm - text_width_mm(hf.header_right_text, style)
            page.ops.append(TextOp(x, baseline, hf.header_right_text, style.font, style.size, FOOTER_GRAY))

    def _logo_positions(self, widths: Sequence[float]) -> list[float]:
        m = self.metrics
        if not widths:
            return []
        gap = self.header_footer.logo_gap_mm or DEFAULT_LOGO_GAP_MM
        left = m.margin_left_mm
        span = m.content_width_mm
        total = sum(widths)
        alignment = self.header_footer.logo_alignment

        if alignment == 'space-between' and len(widths) > 1:
            spacing = max(0.0, (span - total) / (len(widths) - 1))
            start = left
        elif alignment == 'space-around':
            spacing = max(0.0, (span - total) / len(widths))
            start = left + spacing / 2
        else:
            spacing = gap
            group = total + gap * (len(widths) - 1)
            if alignment == 'right':
                start = left + span - group
            elif alignment in {'center', 'space-between'}:
                start = left + (span - group) / 2
            else:
                start = left

        positions = []
        x = start
        for width in widths:
            positions.append(x)
            x += width + spacing
        return positions

    def _page_number_text(self, number: int, total: int) -> str:
        if self.metrics.page_number_style == 'page_of_total':
            return f'Page {number} of {total}'
        return str(number)

    def _stamp_pages(self) -> None:
        m = self.metrics
        hf = self.header_footer
        total = len(self.pages)
        number_y = PAGE_NUMBER_BASELINE_MM
        if self.header_band is not None:
            number_y = self.header_band[1] + 4.0
        number_style = self._style(size=m.body_font_size)

        for page in self.pages:
            if self.footer_separator_mm is not None:
                y = self.footer_separator_mm
                page.ops.append(LineOp(m.margin_left_mm, y, m.content_right_mm, y, 0.5, RULE_GRAY))
                for line, baseline in zip(hf.footer_lines, self.footer_baselines):
                    style = self._style(size=line.font_size, bold=line.bold, italic=line.italic)
                    width = text_width_mm(line.text, style)
                    if hf.footer_alignment == 'left':
                        x = m.margin_left_mm
                    elif hf.footer_alignment == 'right':
                        x = m.content_right_mm - width
                    else:
                        x = (m.page_width_mm - width) / 2
                    page.ops.append(TextOp(x, baseline, line.text, style.font, style.size, FOOTER_GRAY))

            if page.is_cover:
                continue
            label = self._page_number_text(page.index + 1, total)
            x = m.content_right_mm - text_width_mm(label, number_style)
            page.ops.append(TextOp(x, number_y, label, number_style.font, number_style.size))


def paint(
    pages: Sequence[CanvasPage],
    *,
    metrics: PageMetrics | None = None,
    title: str = '',
    author: str = '',
    producer: str = 'projectreport',
) -> bytes:
    metrics = metrics or PageMetrics()
    page_h = metrics.page_height_mm
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(metrics.page_width_mm * mm, page_h * mm), pageCompression=1)
    pdf.setTitle(title)
    pdf.setAuthor(author)
    pdf.setCreator(producer)
    pdf.setProducer(producer)

    readers: dict[str, ImageReader] = {}
    for page in pages:
        for op in page.ops:
            if isinstance(op, TextOp):
                pdf.setFillColorRGB(*op.color)
                pdf.setFont(op.font, op.size)
                pdf.drawString(op.x * mm, (page_h - op.y) * mm, op.text)
            elif isinstance(op, ImageOp):
                key = op.source_url or str(id(op.image))
                reader = readers.get(key)
                if reader is None:
                    reader = op.image.reader()
                    readers[key] = reader
                pdf.drawImage(
                    reader,
                    op.x * mm,
                    (page_h - op.y - op.height) * mm,
                    width=op.width * mm,
                    height=op.height * mm,
                    mask='auto',
                )
            elif isinstance(op, LineOp):
                pdf.setStrokeColorRGB(*op.color)
                pdf.setLineWidth(op.width)
                pdf.line(op.x1 * mm, (page_h - op.y1) * mm, op.x2 * mm, (page_h - op.y2) * mm)
            elif isinstance(op, RectOp):
                if op.fill is not None:
                    pdf.setFillColorRGB(*op.fill)
                if op.stroke is not None:
                    pdf.setStrokeColorRGB(*op.stroke)
                    pdf.setLineWidth(0.5)
                pdf.rect(
                    op.x * mm,
                    (page_h - op.y - op.height) * mm,
                    op.width * mm,
                    op.height * mm,
                    stroke=int(op.stroke is not None),
                    fill=int(op.fill is not None),
                )
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def render_pdf(
    story: ReportStory,
    header_footer: HeaderFooterConfig,
    images: ImageLookup,
    *,
    metrics: PageMetrics | None = None,
    producer: str = 'projectreport',
) -> tuple[bytes, int]:
    metrics = metrics or PageMetrics()
    pages = CanvasRenderer(header_footer, images, metrics).render(story)
    content = paint(pages, metrics=metrics, title=story.title, author=story.author, producer=producer)
    return content, len(pages)
