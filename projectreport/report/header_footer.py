from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Literal

from ..adapters.image_cache import ImageCache, ImageHandle
from ..types import LogoConfig, ProjectInfo, VisualConfig


logger = logging.getLogger(__name__)

FOOTER_LINE1_DEFAULT_SIZE = 9.0
FOOTER_LINE_DEFAULT_SIZE = 7.0
FOOTER_PLAIN_SIZE = 10.0
FOOTER_CUSTOM_TEXT_SIZE = 7.0

LogoSlot = Literal['left', 'center', 'right']


@dataclass(frozen=True)
class FooterLine:
    text: str
    font_size: float
    bold: bool = False
    italic: bool = False


@dataclass(frozen=True)
class HeaderLogo:
    slot: LogoSlot
    image: ImageHandle
    width_mm: float


@dataclass(frozen=True)
class HeaderFooterConfig:
    """Render-ready header and footer shared by the PDF and DOCX outputs."""

    banner: ImageHandle | None = None
    banner_height_mm: float = 25.0
    logos: tuple[HeaderLogo, ...] = ()
    logo_alignment: str = 'space-between'
    logo_gap_mm: float = 0.0
    header_left_text: str = ''
    header_right_text: str = ''
    header_top_padding_mm: float = 5.0
    header_height_mm: float = 20.0
    footer_lines: tuple[FooterLine, ...] = ()
    footer_alignment: str = 'center'
    footer_line_spacing_mm: float = 3.0
    footer_top_spacing_mm: float = 4.0
    institutional_footer: bool = True
    cover_title: str = ''
    cover_subtitle: str = ''
    organization_name: str = ''

    @property
    def has_header(self) -> bool:
        return bool(self.banner or self.logos or self.header_left_text or self.header_right_text)

    @property
    def footer_texts(self) -> list[str]:
        return [line.text for line in self.footer_lines]


def _contact_line(project: ProjectInfo) -> str:
    parts = [
        str(project.organization_website or '').strip(),
        str(project.organization_email or '').strip(),
        str(project.organization_phone or '').strip(),
    ]
    return ' | '.join(part for part in parts if part)


def build_footer_lines(visual: VisualConfig, organization: ProjectInfo | None = None) -> tuple[FooterLine, ...]:
    org_name = str(organization.organization_name if organization else '').strip()
    lines: list[FooterLine] = []

    if visual.footer_institutional_enabled:
        line1 = visual.footer_line1_text.strip() or org_name
        line2 = visual.footer_line2_text.strip()
        if not line2 and visual.footer_show_address and organization is not None:
            line2 = str(organization.organization_address or '').strip()
        line3 = visual.footer_line3_text.strip()
        if not line3 and visual.footer_show_contact and organization is not None:
            line3 = _contact_line(organization)

        if line1:
            lines.append(
                FooterLine(line1, visual.footer_line1_font_size or FOOTER_LINE1_DEFAULT_SIZE, bold=True)
            )
        if line2:
            lines.append(FooterLine(line2, visual.footer_line2_font_size or FOOTER_LINE_DEFAULT_SIZE))
        if line3:
            lines.append(FooterLine(line3, visual.footer_line3_font_size or FOOTER_LINE_DEFAULT_SIZE))
    elif org_name:
        lines.append(FooterLine(org_name, FOOTER_PLAIN_SIZE))

    custom = visual.footer_text.strip()
    if custom:
        lines.append(FooterLine(custom, FOOTER_CUSTOM_TEXT_SIZE, italic=True))
    return tuple(lines)


async def resolve_header_footer(
    visual: VisualConfig,
    cache: ImageCache,
    *,
    organization: ProjectInfo | None = None,
) -> HeaderFooterConfig:
    banner_url = visual.header_banner_url.strip() if visual.header_banner_visible else ''
    slots: list[tuple[LogoSlot, str, LogoConfig]] = [
        ('left', visual.logo.strip(), visual.logo_config),
        ('center', visual.logo_center.strip(), visual.logo_center_config),
        ('right', visual.logo_secondary.strip(), visual.logo_secondary_config),
    ]
    wanted = [(slot, url, config) for slot, url, config in slots if url and config.visible]

    banner, *logo_images = await asyncio.gather(
        cache.load(banner_url),
        *(cache.load(url) for _, url, _ in wanted),
    )
    if banner_url and banner is None:
        logger.warning('header banner unavailable; rendering without it')

    logos: list[HeaderLogo] = []
    for (slot, url, config), image in zip(wanted, logo_images):
        if image is None:
            logger.warning('header logo unavailable slot=%s', slot)
            continue
        logos.append(HeaderLogo(slot=slot, image=image, width_mm=max(1.0, float(config.width_mm))))

    return HeaderFooterConfig(
        banner=banner,
        banner_height_mm=max(1.0, float(visual.header_banner_height_mm)),
        logos=tuple(logos),
        logo_alignment=visual.header_logo_alignment,
        logo_gap_mm=max(0.0, float(visual.header_logo_gap)),
        header_left_text=visual.header_left_text.strip(),
        header_right_text=visual.header_right_text.strip(),
        header_top_padding_mm=max(0.0, float(visual.header_top_padding)),
        header_height_mm=max(0.0, float(visual.header_height)),
        footer_lines=build_footer_lines(visual, organization),
        footer_alignment=visual.footer_alignment,
        footer_line_spacing_mm=max(0.0, float(visual.footer_line_spacing)),
        footer_top_spacing_mm=max(0.0, float(visual.footer_top_spacing)),
        institutional_footer=visual.footer_institutional_enabled,
        cover_title=visual.cover_title.strip(),
        cover_subtitle=visual.cover_subtitle.strip(),
        organization_name=str(organization.organization_name if organization else '').strip(),
    )
