from __future__ import annotations

import io
import logging
from typing import Callable, Iterable, Sequence, Union

from docx import Document
from docx.document import Document as DocxDocument
from docx.enum.table import WD_TABLE_ALIGNMENT
from docx.enum.text import WD_ALIGN_PARAGRAPH, WD_TAB_ALIGNMENT
from docx.image.exceptions import UnrecognizedImageError
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Mm, Pt, RGBColor

from ..adapters.image_cache import ImageHandle
from ..config import Settings, get_settings
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

PAGE_WIDTH_MM = 210.0
PAGE_HEIGHT_MM = 297.0
CAPTION_SIZE = Pt(10)
TITLE_SIZE = Pt(16)
COVER_NAME_SIZE = Pt(14)
HEADER_TEXT_SIZE = Pt(9)
LIST_INDENT_MM = 12.0
LIST_HANGING_MM = 4.0
PHOTO_LABEL = 'Photo'
TABLE_HEADER_FILL = 'E0E0E0'
FOOTER_COLOR = RGBColor(0x50, 0x50, 0x50)
# keeps pictures clear of the page bottom so Word never has to shrink them
MAX_PICTURE_HEIGHT_MM = 200.0

ImageLookup = Callable[[str], Union[ImageHandle, None]]

_ALIGNMENTS = {
    'left': WD_ALIGN_PARAGRAPH.LEFT,
    'center': WD_ALIGN_PARAGRAPH.CENTER,
    'right': WD_ALIGN_PARAGRAPH.RIGHT,
}


def _add_field(paragraph, instruction: str, *, size: Pt | None = None):
    run = paragraph.add_run()
    begin = OxmlElement('w:fldChar')
    begin.set(qn('w:fldCharType'), 'begin')
    instr = OxmlElement('w:instrText')
    instr.set(qn('xml:space'), 'preserve')
    instr.text = instruction
    end = OxmlElement('w:fldChar')
    end.set(qn('w:fldCharType'), 'end')
    run._r.append(begin)
    run._r.append(instr)
    run._r.append(end)
    if size is not None:
        run.font.size = size
    return run


def _shade_cell(cell, hex_color: str) -> None:
    tcPr = cell._element.get_or_add_tcPr()
    shd = OxmlElement('w:shd')
    shd.set(qn('w:val'), 'clear')
    shd.set(qn('w:color'), 'auto')
    shd.set(qn('w:fill'), hex_color)
    tcPr.append(shd)


def _repeat_as_header(row) -> None:
    trPr = row._tr.get_or_add_trPr()
    marker = OxmlElement('w:tblHeader')
    marker.set(qn('w:val'), 'true')
    trPr.append(marker)


def count_page_breaks(document: DocxDocument) -> int:
    return len(document.element.body.xpath('.//w:br[@w:type="page"]'))


class ReflowDocumentBuilder:
    """Translates a :class:`ReportStory` into a python-docx document.

    No vertical positioning is done here: Word paginates by itself. Explicit
    page breaks are only emitted after the cover, before photographic
    attachments and at :class:`SectionBreak` elements.
    """

    def __init__(
        self,
        header_footer: HeaderFooterConfig,
        images: ImageLookup,
        settings: Settings | None = None,
    ):
        self.header_footer = header_footer
        self.images = images
        self.settings = settings or get_settings()
        self.content_width_mm = (
            PAGE_WIDTH_MM - self.settings.page_margin_left_mm - self.settings.page_margin_right_mm
        )
        self.document: DocxDocument | None = None
        self._body_since_break = False

    @property
    def _doc(self) -> DocxDocument:
        assert self.document is not None
        return self.document

    def build(self, story: ReportStory) -> DocxDocument:
        self.document = Document()
        self._body_since_break = False
        self._setup_page()
        self._setup_styles()
        self._write_header_footer(cover=story.has_cover)
        core = self._doc.core_properties
        core.title = story.title
        core.author = story.author
        for element in story.elements:
            self._add_element(element)
        return self._doc

    def _setup_page(self) -> None:
        s = self.settings
        for section in self._doc.sections:
            section.page_width = Mm(PAGE_WIDTH_MM)
            section.page_height = Mm(PAGE_HEIGHT_MM)
            section.left_margin = Mm(s.page_margin_left_mm)
            section.right_margin = Mm(s.page_margin_right_mm)
            section.top_margin = Mm(s.page_margin_top_mm)
            section.bottom_margin = Mm(s.page_margin_bottom_mm)
            section.header_distance = Mm(max(0.0, self.header_footer.header_top_padding_mm))
            section.footer_distance = Mm(5)

    def _setup_styles(self) -> None:
        normal = self._doc.styles['Normal']
        normal.font.name = self.settings.docx_font_name
        normal.font.size = Pt(self.settings.docx_body_font_size)
        rPr = normal.element.get_or_add_rPr()
        rPr.get_or_add_rFonts().set(qn('w:eastAsia'), self.settings.docx_font_name)
        normal.paragraph_format.line_spacing = self.settings.docx_line_spacing
        normal.paragraph_format.space_after = Pt(4)

    def _write_header_footer(self, *, cover: bool) -> None:
        section = self._doc.sections[0]
        section.different_first_page_header_footer = cover
        header = section.header
        header.is_linked_to_previous = False
        self._fill_header(header, with_page_number=True)
        self._fill_footer(section.footer)
        if cover:
            self._fill_header(section.first_page_header, with_page_number=False)
            self._fill_footer(section.first_page_footer)

    def _picture_width_mm(self, handle: ImageHandle, max_width: float, max_height: float | None = None) -> float:
        width, _ = handle.fit_within(max_width, max_height)
        return max(1.0, width)

    def _add_picture(self, paragraph, handle: ImageHandle, width_mm: float) -> bool:
        try:
            paragraph.add_run().add_picture(io.BytesIO(handle.data), width=Mm(width_mm))
        except UnrecognizedImageError:
            logger.warning('image format not embeddable in docx url=%s', handle.source_url[:160])
            return False
        return True

    def _fill_header(self, header, *, with_page_number: bool) -> None:
        hf = self.header_footer
        paragraph = header.paragraphs[0] if header.paragraphs else header.add_paragraph()
        paragraph.clear()

        if hf.banner is not None:
            paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
            self._add_picture(
                paragraph,
                hf.banner,
                self._picture_width_mm(hf.banner, self.content_width_mm, hf.banner_height_mm),
            )
        elif hf.logos:
            table = header.add_table(rows=1, cols=3, width=Mm(self.content_width_mm))
            table.alignment = WD_TABLE_ALIGNMENT.CENTER
            cells = {'left': table.rows[0].cells[0], 'center': table.rows[0].cells[1], 'right': table.rows[0].cells[2]}
            for slot, cell in cells.items():
                cell.paragraphs[0].alignment = _ALIGNMENTS[slot]
            for logo in hf.logos:
                cell = cells[logo.slot]
                self._add_picture(
                    cell.paragraphs[0],
                    logo.image,
                    self._picture_width_mm(logo.image, logo.width_mm, hf.header_height_mm or None),
                )
            if hf.header_left_text:
                self._small_run(cells['left'].add_paragraph(), hf.header_left_text)
            if hf.header_right_text:
                extra = cells['right'].add_paragraph()
                extra.alignment = WD_ALIGN_PARAGRAPH.RIGHT
                self._small_run(extra, hf.header_right_text)
        if hf.banner is None and not hf.logos and (hf.header_left_text or hf.header_right_text):
            paragraph.paragraph_format.tab_stops.add_tab_stop(Mm(self.content_width_mm), WD_TAB_ALIGNMENT.RIGHT)
            self._small_run(paragraph, hf.header_left_text)
            if hf.header_right_text:
                self._small_run(paragraph, '\t' + hf.header_right_text)

        if with_page_number:
            number = header.add_paragraph()
            number.alignment = WD_ALIGN_PARAGRAPH.RIGHT
            if self.settings.page_number_style == 'page_of_total':
                number.add_run('Page ')
                _add_field(number, 'PAGE')
                number.add_run(' of ')
                _add_field(number, 'NUMPAGES')
            else:
                _add_field(number, 'PAGE')

    def _small_run(self, paragraph, text: str):
        run = paragraph.add_run(text)
        run.font.size = HEADER_TEXT_SIZE
        run.font.color.rgb = FOOTER_COLOR
        return run

    def _fill_footer(self, footer) -> None:
        hf = self.header_footer
        footer.is_linked_to_previous = False
        first = footer.paragraphs[0] if footer.paragraphs else footer.add_paragraph()
        first.clear()
        alignment = _ALIGNMENTS.get(hf.footer_alignment, WD_ALIGN_PARAGRAPH.CENTER)
        for index, line in enumerate(hf.footer_lines):
            paragraph = first if index == 0 else footer.add_paragraph()
            paragraph.alignment = alignment
            paragraph.paragraph_format.space_after = Pt(1)
            paragraph.paragraph_format.line_spacing = 1.0
            run = paragraph.add_run(line.text)
            run.font.size = Pt(line.font_size)
            run.font.bold = line.bold
            run.font.italic = line.italic
            run.font.color.rgb = FOOTER_COLOR

    def _page_break(self) -> None:
        if self._body_since_break:
            self._doc.add_page_break()
            self._body_since_break = False

    def _paragraph(self, *, alignment=None, indent_first: bool = False):
        paragraph = self._doc.add_paragraph()
        if alignment is not None:
            paragraph.alignment = alignment
        if indent_first:
            paragraph.paragraph_format.first_line_indent = Mm(self.settings.paragraph_indent_mm)
        self._body_since_break = True
        return paragraph

    @staticmethod
    def _add_runs(paragraph, runs: Iterable[Run], *, size: Pt | None = None) -> None:
        for item in runs:
            run = paragraph.add_run(item.text)
            run.bold = item.bold or None
            run.italic = item.italic or None
            run.underline = item.underline or None
            if size is not None:
                run.font.size = size

    def _add_element(self, element: StoryElement) -> None:
        if isinstance(element, CoverPage):
            self._add_cover(element)
        elif isinstance(element, Heading):
            self._add_heading(element)
        elif isinstance(element, RichText):
            for block in element.blocks:
                self._add_block(block)
        elif isinstance(element, FieldList):
            for item in element.fields:
                label = item.label.strip().rstrip(':')
                runs = (Run(f'{label}: ', bold=True), Run(item.value.strip() or '-'))
                if element.bulleted:
                    self._add_list_paragraph(runs, '•')
                else:
                    self._add_runs(self._paragraph(), runs)
        elif isinstance(element, ActivityList):
            self._add_activity_list(element)
        elif isinstance(element, DataTable):
            self._add_table(element)
        elif isinstance(element, PhotoAttachments):
            self._add_attachments(element)
        elif isinstance(element, Signature):
            self._add_signature(element)
        elif isinstance(element, SectionBreak):
            self._page_break()
        else:
            raise TypeError(f'unsupported story element: {type(element).__name__}')

    def _add_block(self, block: Block) -> None:
        if isinstance(block, Paragraph):
            paragraph = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.JUSTIFY, indent_first=True)
            self._add_runs(paragraph, block.runs)
        elif isinstance(block, BulletItem):
            self._add_list_paragraph(block.runs, '•')
        elif isinstance(block, OrderedItem):
            self._add_list_paragraph(block.runs, f'{block.index}.')
        elif isinstance(block, InlineImage):
            self._add_inline_image(block)
        elif isinstance(block, Gallery):
            items = []
            for image in block.images:
                handle = self.images(image.src)
                if handle is None:
                    logger.warning('skipping unavailable gallery image')
                    continue
                items.append((handle, image.caption))
            if items:
                self._add_photo_table(items, columns=block.columns)
        else:
            raise TypeError(f'unsupported block: {type(block).__name__}')

    def _add_list_paragraph(self, runs: Sequence[Run], prefix: str):
        paragraph = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.JUSTIFY)
        fmt = paragraph.paragraph_format
        fmt.left_indent = Mm(LIST_INDENT_MM)
        fmt.first_line_indent = Mm(-LIST_HANGING_MM)
        fmt.tab_stops.add_tab_stop(Mm(LIST_INDENT_MM))
        paragraph.add_run(f'{prefix}\t')
        self._add_runs(paragraph, runs)
        return paragraph

    def _add_heading(self, heading: Heading) -> None:
        text = heading.text.strip()
        if not text:
            return
        if heading.level <= 0:
            paragraph = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
            paragraph.paragraph_format.space_after = Pt(12)
            run = paragraph.add_run(text)
            run.bold = True
            run.font.size = TITLE_SIZE
        else:
            paragraph = self._paragraph()
            paragraph.paragraph_format.space_before = Pt(12 if heading.level == 1 else 6)
            paragraph.add_run(text).bold = True
        paragraph.paragraph_format.keep_with_next = True

    def _add_caption(self, container, caption: str, *, alignment) -> None:
        paragraph = container.add_paragraph()
        paragraph.alignment = alignment
        paragraph.paragraph_format.line_spacing = 1.0
        run = paragraph.add_run(caption)
        run.italic = True
        run.font.size = CAPTION_SIZE

    def _add_inline_image(self, block: InlineImage) -> None:
        handle = self.images(block.src)
        if handle is None:
            logger.warning('skipping unavailable inline image')
            return
        width = self._picture_width_mm(
            handle,
            self.content_width_mm * block.width_percent / 100.0,
            MAX_PICTURE_HEIGHT_MM,
        )
        paragraph = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
        if not self._add_picture(paragraph, handle, width):
            return
        if block.caption:
            paragraph.paragraph_format.keep_with_next = True
            self._add_caption(self._doc, block.caption, alignment=WD_ALIGN_PARAGRAPH.CENTER)

    def _add_photo_table(
        self,
        items: Sequence[tuple[ImageHandle, str]],
        *,
        columns: int = 2,
        caption_alignment=WD_ALIGN_PARAGRAPH.LEFT,
    ) -> None:
        columns = max(1, min(int(columns), 4))
        gap_mm = 10.0
        rows = [list(items[start:start + columns]) for start in range(0, len(items), columns)]
        table = self._doc.add_table(rows=len(rows), cols=columns)
        table.alignment = WD_TABLE_ALIGNMENT.CENTER
        self._body_since_break = True

        for row_index, row in enumerate(rows):
            cells = list(table.rows[row_index].cells)
            if len(row) < columns:
                # short last row spreads over the full width
                span = columns // len(row)
                merged = []
                for index in range(len(row)):
                    start = index * span
                    stop = columns - 1 if index == len(row) - 1 else start + span - 1
                    merged.append(cells[start].merge(cells[stop]) if stop > start else cells[start])
                cells = merged
            cell_width = (self.content_width_mm - gap_mm * (len(row) - 1)) / len(row)
            for cell, (handle, caption) in zip(cells, row):
                paragraph = cell.paragraphs[0]
                paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
                width = self._picture_width_mm(handle, cell_width, cell_width * 0.75)
                if not self._add_picture(paragraph, handle, width):
                    continue
                if caption:
                    self._add_caption(cell, caption, alignment=caption_alignment)

    def _add_attachments(self, element: PhotoAttachments) -> None:
        if element.photo_count == 0:
            return
        self._page_break()
        if element.title.strip():
            title = self._paragraph()
            title.paragraph_format.keep_with_next = True
            title.add_run(element.title.strip()).bold = True

        number = 0
        for cluster in element.clusters:
            items = []
            for photo in cluster.photos:
                handle = self.images(photo.src)
                if handle is None:
                    logger.warning('skipping unavailable photo in %r', element.title)
                    continue
                number += 1
                if cluster.grouped:
                    items.append((handle, ''))
                elif photo.caption:
                    items.append((handle, f'{PHOTO_LABEL} {number}: {photo.caption}'))
                else:
                    items.append((handle, f'{PHOTO_LABEL} {number}'))
            if not items:
                continue
            self._add_photo_table(items)
            if cluster.grouped:
                self._add_caption(self._doc, cluster.shared_caption.strip(), alignment=WD_ALIGN_PARAGRAPH.CENTER)

    def _add_activity_list(self, element: ActivityList) -> None:
        if not element.entries:
            return
        label = self._paragraph()
        label.paragraph_format.keep_with_next = True
        label.add_run(element.label).bold = True
        for entry in element.entries:
            self._add_list_paragraph((Run(entry.headline),), '•')
            if entry.details.strip():
                details = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.JUSTIFY)
                details.paragraph_format.left_indent = Mm(LIST_INDENT_MM)
                details.add_run(entry.details.strip())

    def _add_table(self, element: DataTable) -> None:
        if not element.columns:
            return
        table = self._doc.add_table(rows=1, cols=len(element.columns))
        table.style = 'Table Grid'
        table.alignment = WD_TABLE_ALIGNMENT.CENTER
        self._body_since_break = True
        widths = [Mm(self.content_width_mm * fraction) for fraction in element.column_fractions()]

        header = table.rows[0]
        _repeat_as_header(header)
        for cell, title, width in zip(header.cells, element.columns, widths):
            cell.width = width
            _shade_cell(cell, TABLE_HEADER_FILL)
            cell.paragraphs[0].add_run(title).bold = True

        for values in element.rows:
            padded = list(values[: len(element.columns)]) + [''] * (len(element.columns) - len(values))
            cells = table.add_row().cells
            for cell, value, width in zip(cells, padded, widths):
                cell.width = width
                cell.paragraphs[0].add_run(value or '-')
        self._paragraph()

    def _add_signature(self, signature: Signature) -> None:
        spacer = self._paragraph()
        spacer.paragraph_format.space_after = Pt(24)
        place = self._paragraph()
        place.paragraph_format.space_after = Pt(36)
        place.paragraph_format.keep_with_next = True
        place.add_run(signature.place_date)

        line = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
        line.paragraph_format.space_after = Pt(0)
        line.paragraph_format.keep_with_next = True
        line.add_run('_' * 37)
        label = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
        label.paragraph_format.keep_with_next = True
        label.add_run(signature.label)
        if signature.name.strip():
            name = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
            name.add_run(signature.name.strip()).bold = True
        for extra in signature.extras:
            paragraph = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
            self._add_runs(
                paragraph,
                (Run(f'{extra.label.strip().rstrip(":")}: ', bold=True), Run(extra.value.strip() or '-')),
            )

    def _add_cover(self, cover: CoverPage) -> None:
        title = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
        title.paragraph_format.space_before = Pt(180)
        title.paragraph_format.space_after = Pt(12)
        run = title.add_run(cover.title.upper())
        run.bold = True
        run.font.size = TITLE_SIZE
        if cover.subtitle.strip():
            self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER).add_run(cover.subtitle.strip())
        if cover.project_name.strip():
            name = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
            name.paragraph_format.space_before = Pt(18)
            name_run = name.add_run(cover.project_name.strip().upper())
            name_run.bold = True
            name_run.font.size = COVER_NAME_SIZE
        for text in cover.lines:
            if text.strip():
                self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER).add_run(text.strip())
        if cover.organization.strip():
            org = self._paragraph(alignment=WD_ALIGN_PARAGRAPH.CENTER)
            org.paragraph_format.space_before = Pt(36)
            org_run = org.add_run(cover.organization.strip())
            org_run.bold = True
            org_run.font.size = COVER_NAME_SIZE
        self._page_break()


def to_bytes(document: DocxDocument) -> bytes:
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def render_docx(
    story: ReportStory,
    header_footer: HeaderFooterConfig,
    images: ImageLookup,
    *,
    settings: Settings | None = None,
) -> bytes:
    return to_bytes(ReflowDocumentBuilder(header_footer, images, settings).build(story))
