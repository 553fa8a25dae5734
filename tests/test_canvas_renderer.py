from __future__ import annotations

import io
import unittest
from pathlib import Path

import reportlab
from pypdf import PdfReader

from projectreport.config import Settings
from projectreport.report.blocks import InlineImage, Paragraph, Run
from projectreport.report.canvas_pdf import (
    CanvasRenderer,
    ImageOp,
    LineOp,
    PageCursor,
    PageMetrics,
    TextOp,
    TextStyle,
    paint,
    render_pdf,
    resolve_pdf_fonts,
    text_width_mm,
    wrap_text,
)
from projectreport.report.header_footer import FooterLine, HeaderFooterConfig
from projectreport.report.story import (
    CoverPage,
    DataTable,
    Heading,
    PhotoAttachments,
    PhotoCluster,
    ReportStory,
    RichText,
    Signature,
    StoryPhoto,
)

from support import lookup, png_handle


def _photo_urls(count: int) -> list[str]:
    return [f'https://img.test/photo-{index}.png' for index in range(1, count + 1)]


def _handles(urls: list[str], width: int = 40, height: int = 30) -> dict:
    return {url: png_handle(url, width, height) for url in urls}


def _render(elements, *, handles=None, header_footer=None, metrics=None) -> tuple[CanvasRenderer, list]:
    renderer = CanvasRenderer(header_footer or HeaderFooterConfig(), lookup(handles or {}), metrics)
    pages = renderer.render(ReportStory(title='Test', elements=list(elements)))
    return renderer, pages


def _all_images(pages) -> list[ImageOp]:
    return [op for page in pages for op in page.images()]


def _long_paragraphs(count: int) -> RichText:
    text = 'The community garden project continued with weekly sessions and volunteers. ' * 4
    return RichText(tuple(Paragraph(runs=(Run(text),)) for _ in range(count)))


class CursorTests(unittest.TestCase):
    def test_cursor_never_moves_up(self) -> None:
        cursor = PageCursor(30.0)
        cursor.advance(10)
        self.assertEqual(cursor.current_y, 40.0)
        with self.assertRaises(ValueError):
            cursor.advance(-1)
        cursor.reset(30.0, 2)
        self.assertEqual((cursor.current_y, cursor.page_index), (30.0, 2))


class WrapTextTests(unittest.TestCase):
    def test_wraps_within_width_and_honours_breaks(self) -> None:
        style = TextStyle('Times-Roman', 12)
        lines = wrap_text([('alpha beta gamma delta ' * 10, style)], width_mm=60)
        self.assertGreater(len(lines), 1)
        for line in lines:
            self.assertLessEqual(line.width_mm, 60 + 1e-6)
        forced = wrap_text([('one\ntwo', style)], width_mm=160)
        self.assertEqual([line.text for line in forced], ['one', 'two'])

    def test_long_word_is_split(self) -> None:
        style = TextStyle('Times-Roman', 12)
        lines = wrap_text([('x' * 400, style)], width_mm=50)
        self.assertGreater(len(lines), 1)
        self.assertEqual(''.join(line.text for line in lines), 'x' * 400)


class ImageSkippingTests(unittest.TestCase):
    def test_failed_inline_image_is_omitted(self) -> None:
        ok_url, bad_url = 'https://img.test/ok.png', 'https://img.test/bad.png'
        story = [
            RichText((InlineImage(ok_url, caption='Kept'), InlineImage(bad_url, caption='Dropped caption'))),
        ]
        with self.assertLogs('projectreport.report.canvas_pdf', level='WARNING'):
            _, pages = _render(story, handles=_handles([ok_url]))
        images = _all_images(pages)
        self.assertEqual(len(images), 1)
        self.assertEqual(images[0].source_url, ok_url)
        text = '\n'.join(page.text() for page in pages)
        self.assertIn('Kept', text)
        self.assertNotIn('Dropped caption', text)

    def test_failed_photo_is_not_numbered(self) -> None:
        urls = _photo_urls(3)
        cluster = PhotoCluster(photos=tuple(StoryPhoto(url, f'Caption {i}') for i, url in enumerate(urls, start=1)))
        with self.assertLogs('projectreport.report.canvas_pdf', level='WARNING'):
            _, pages = _render(
                [PhotoAttachments('RECORDS', (cluster,))],
                handles=_handles([urls[0], urls[2]]),
            )
        texts = [text for page in pages for text in page.texts()]
        self.assertIn('Photo 1: Caption 1', texts)
        self.assertIn('Photo 2: Caption 3', texts)
        self.assertFalse(any(text.startswith('Photo 3') for text in texts))
        self.assertEqual(len(_all_images(pages)), 2)


class PhotoGridTests(unittest.TestCase):
    def test_seven_photos_fill_rows_of_two_then_one_full_width(self) -> None:
        urls = _photo_urls(7)
        cluster = PhotoCluster(photos=tuple(StoryPhoto(url, f'Caption {i}') for i, url in enumerate(urls, start=1)))
        renderer, pages = _render([PhotoAttachments('PHOTOGRAPHIC RECORDS', (cluster,))], handles=_handles(urls))
        m = renderer.metrics
        images = _all_images(pages)

        self.assertEqual([op.source_url for op in images], urls)
        half = (m.content_width_mm - 10.0) / 2
        for op in images[:6]:
            self.assertAlmostEqual(op.width, half, places=3)
        self.assertAlmostEqual(images[6].width, m.content_width_mm, places=3)
        self.assertAlmostEqual(images[6].x, m.margin_left_mm, places=3)
        self.assertAlmostEqual(images[0].x, m.margin_left_mm, places=3)
        self.assertAlmostEqual(images[1].x, m.margin_left_mm + half + 10.0, places=3)
        self.assertAlmostEqual(images[0].y, images[1].y, places=6)

        captions = {op.text: op for page in pages for op in page.ops if isinstance(op, TextOp)}
        for index in range(1, 8):
            self.assertIn(f'Photo {index}: Caption {index}', captions)
        self.assertAlmostEqual(captions['Photo 2: Caption 2'].x, images[1].x, places=3)
        self.assertAlmostEqual(captions['Photo 7: Caption 7'].x, m.margin_left_mm, places=3)

    def test_grouped_photos_share_one_centered_caption(self) -> None:
        urls = _photo_urls(4)
        grouped = PhotoCluster(
            photos=tuple(StoryPhoto(url, f'Own caption {i}') for i, url in enumerate(urls[:3], start=1)),
            shared_caption='Opening ceremony',
        )
        loose = PhotoCluster(photos=(StoryPhoto(urls[3], 'Closing'),))
        renderer, pages = _render([PhotoAttachments('RECORDS', (grouped, loose))], handles=_handles(urls))
        ops = [op for page in pages for op in page.ops if isinstance(op, TextOp)]
        texts = [op.text for op in ops]

        self.assertEqual(texts.count('Opening ceremony'), 1)
        self.assertFalse(any(text.startswith('Own caption') or text.startswith('Photo 1') for text in texts))
        self.assertIn('Photo 4: Closing', texts)
        shared = next(op for op in ops if op.text == 'Opening ceremony')
        m = renderer.metrics
        width = text_width_mm(shared.text, TextStyle(shared.font, shared.size))
        self.assertAlmostEqual(shared.x + width / 2, m.margin_left_mm + m.content_width_mm / 2, places=3)

    def test_attachments_start_on_new_page(self) -> None:
        urls = _photo_urls(1)
        _, pages = _render(
            [_long_paragraphs(1), PhotoAttachments('RECORDS', (PhotoCluster((StoryPhoto(urls[0]),)),))],
            handles=_handles(urls),
        )
        self.assertEqual(len(pages), 2)
        self.assertEqual(pages[0].images(), [])
        self.assertEqual(len(pages[1].images()), 1)
        self.assertIn('RECORDS', pages[1].texts())


class PaginationTests(unittest.TestCase):
    def test_page_numbers_on_every_page_but_the_cover(self) -> None:
        story = [CoverPage('Partial report', project_name='River Schools'), _long_paragraphs(40)]
        _, pages = _render(story)
        self.assertGreater(len(pages), 3)
        self.assertTrue(pages[0].is_cover)
        self.assertFalse(any(isinstance(op, TextOp) and op.y == 15.0 for op in pages[0].ops))
        for page in pages[1:]:
            numbers = [op for op in page.ops if isinstance(op, TextOp) and op.y == 15.0]
            self.assertEqual([op.text for op in numbers], [str(page.index + 1)])

    def test_page_of_total_style(self) -> None:
        metrics = PageMetrics(page_number_style='page_of_total')
        _, pages = _render([_long_paragraphs(20)], metrics=metrics)
        total = len(pages)
        self.assertGreater(total, 1)
        self.assertIn(f'Page 1 of {total}', pages[0].texts())
        self.assertIn(f'Page {total} of {total}', pages[-1].texts())

    def test_page_number_sits_below_header(self) -> None:
        header = HeaderFooterConfig(header_left_text='Left text', header_height_mm=20, header_top_padding_mm=5)
        renderer, pages = _render([_long_paragraphs(2)], header_footer=header)
        number = next(op for op in pages[0].ops if isinstance(op, TextOp) and op.text == '1')
        self.assertAlmostEqual(number.y, 29.0)
        self.assertIn('Left text', pages[0].texts())
        self.assertGreaterEqual(renderer.content_top_mm, 30.0)

    def test_footer_stamped_on_every_page(self) -> None:
        footer = HeaderFooterConfig(
            footer_lines=(FooterLine('Instituto Horizonte', 9, bold=True), FooterLine('Rua das Flores', 7)),
        )
        renderer, pages = _render([CoverPage('Report'), _long_paragraphs(20)], header_footer=footer)
        for page in pages:
            self.assertIn('Instituto Horizonte', page.texts())
            self.assertIn('Rua das Flores', page.texts())
            self.assertTrue(any(isinstance(op, LineOp) and op.y1 == renderer.footer_separator_mm for op in page.ops))
        self.assertLess(renderer.max_y_mm, renderer.footer_separator_mm)

    def test_text_stays_above_bottom_limit(self) -> None:
        renderer, pages = _render([_long_paragraphs(30)])
        self.assertGreater(len(pages), 2)
        for page in pages:
            for op in page.ops:
                if isinstance(op, TextOp):
                    self.assertLessEqual(op.y, renderer.max_y_mm)

    def test_oversized_image_is_scaled_onto_one_page(self) -> None:
        url = 'https://img.test/tall.png'
        renderer, pages = _render([RichText((InlineImage(url),))], handles=_handles([url], 10, 2000))
        self.assertEqual(len(pages), 1)
        image = pages[0].images()[0]
        self.assertLessEqual(image.height, renderer.usable_height_mm + 1e-6)
        self.assertAlmostEqual(image.height / image.width, 200.0, places=3)

    def test_layout_is_deterministic(self) -> None:
        urls = _photo_urls(3)
        story = [
            CoverPage('Report'),
            Heading('1. Object'),
            _long_paragraphs(6),
            RichText((InlineImage(urls[0], caption='Inline', width_percent=50),)),
            PhotoAttachments('RECORDS', (PhotoCluster(tuple(StoryPhoto(url, 'c') for url in urls)),)),
            Signature('Rio de Janeiro, 1 March 2026.', 'Signature of the person responsible', 'Instituto'),
        ]
        handles = _handles(urls)
        _, first = _render(story, handles=handles)
        _, second = _render(story, handles=handles)
        self.assertEqual([page.ops for page in first], [page.ops for page in second])

    def test_table_header_repeats_after_page_break(self) -> None:
        rows = tuple((f'Item {index}', f'Used for workshop {index}') for index in range(60))
        table = DataTable(columns=('Expense item', 'Description of use'), rows=rows, widths=(0.4, 0.6))
        _, pages = _render([table])
        with_header = [page for page in pages if 'Expense item' in page.texts()]
        self.assertGreater(len(pages), 1)
        self.assertEqual(len(with_header), len(pages))

    def test_underline_draws_a_rule(self) -> None:
        _, pages = _render([RichText((Paragraph(runs=(Run('marked', underline=True),)),))])
        self.assertTrue(any(isinstance(op, LineOp) for op in pages[0].ops))


class PaintTests(unittest.TestCase):
    def test_painted_pdf_is_readable(self) -> None:
        url = 'https://img.test/photo.png'
        story = ReportStory(
            title='Partial report',
            author='Instituto Horizonte',
            elements=[
                Heading('Alpha section'),
                RichText((Paragraph(runs=(Run('Body text for the report.'),)), InlineImage(url))),
            ],
        )
        content, page_count = render_pdf(story, HeaderFooterConfig(), lookup(_handles([url])))
        reader = PdfReader(io.BytesIO(content))
        self.assertEqual(len(reader.pages), page_count)
        self.assertIn('Alpha section', reader.pages[0].extract_text())
        self.assertEqual(reader.metadata.title, 'Partial report')

    def test_paint_empty_page_list(self) -> None:
        content = paint([], title='Empty')
        self.assertTrue(content.startswith(b'%PDF'))


VERA_DIR = Path(reportlab.__file__).parent / 'fonts'


class FontResolutionTests(unittest.TestCase):
    def test_builtin_fonts_by_default(self) -> None:
        metrics = PageMetrics.from_settings(Settings())
        self.assertEqual(
            (metrics.font_regular, metrics.font_bold, metrics.font_italic, metrics.font_bold_italic),
            ('Times-Roman', 'Times-Bold', 'Times-Italic', 'Times-BoldItalic'),
        )

    def test_truetype_faces_are_registered(self) -> None:
        settings = Settings(pdf_font_file_regular=VERA_DIR / 'Vera.ttf', pdf_font_file_bold=VERA_DIR / 'VeraBd.ttf')
        self.assertEqual(resolve_pdf_fonts(settings), ('Vera', 'VeraBd', 'Vera', 'Vera'))

        metrics = PageMetrics.from_settings(settings)
        paragraph = Paragraph(runs=(Run('Plain '), Run('bold', bold=True)))
        story = ReportStory(title='Fonts', elements=[RichText((paragraph,))])
        content, page_count = render_pdf(story, HeaderFooterConfig(), lookup({}), metrics=metrics)
        self.assertEqual(page_count, 1)
        self.assertIn('Plain', PdfReader(io.BytesIO(content)).pages[0].extract_text())

        _, pages = _render([RichText((Paragraph(runs=(Run('bold', bold=True),)),))], metrics=metrics)
        fonts = {op.font for op in pages[0].ops if isinstance(op, TextOp) and op.text == 'bold'}
        self.assertEqual(fonts, {'VeraBd'})

    def test_missing_font_file_falls_back(self) -> None:
        settings = Settings(pdf_font_file_regular=VERA_DIR / 'does-not-exist.ttf')
        with self.assertLogs('projectreport.report.canvas_pdf', level='WARNING'):
            fonts = resolve_pdf_fonts(settings)
        self.assertEqual(fonts[0], 'Times-Roman')

    def test_cid_fallback_renders_cjk(self) -> None:
        metrics = PageMetrics.from_settings(Settings(pdf_cid_fallback_font='STSong-Light'))
        self.assertEqual(metrics.font_regular, 'STSong-Light')
        story = ReportStory(title='CJK', elements=[RichText((Paragraph(runs=(Run('项目报告'),)),))])
        content, _ = render_pdf(story, HeaderFooterConfig(), lookup({}), metrics=metrics)
        self.assertTrue(content.startswith(b'%PDF'))
