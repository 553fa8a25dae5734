from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )

    producer: str = 'projectreport'

    data_dir: Path = Field(default=Path('./data'))
    log_level: str = Field(
        default='INFO',
        validation_alias=AliasChoices('LOG_LEVEL', 'REPORT_LOG_LEVEL'),
    )

    # Remote image acquisition
    image_fetch_timeout_seconds: float = Field(
        default=20.0,
        validation_alias=AliasChoices('IMAGE_FETCH_TIMEOUT_SECONDS', 'IMAGE_TIMEOUT'),
    )
    image_max_bytes: int = 15 * 1024 * 1024
    image_user_agent: str = 'projectreport-export/0.1'

    # Fixed-page (PDF) typography. Built-in reportlab Type 1 fonts.
    pdf_font_regular: str = 'Times-Roman'
    pdf_font_bold: str = 'Times-Bold'
    pdf_font_italic: str = 'Times-Italic'
    pdf_font_bold_italic: str = 'Times-BoldItalic'
    # Optional TrueType faces for text outside Latin-1; missing styles reuse the regular face.
    pdf_font_file_regular: Path | None = None
    pdf_font_file_bold: Path | None = None
    pdf_font_file_italic: Path | None = None
    pdf_font_file_bold_italic: Path | None = None
    # reportlab CID font used when no TrueType file is set, e.g. STSong-Light for CJK text.
    pdf_cid_fallback_font: str = ''
    pdf_body_font_size: float = 12
    pdf_caption_font_size: float = 10
    pdf_title_font_size: float = 16
    pdf_line_height_mm: float = 7.2

    # ABNT NBR 14724 page setup, shared by both output formats
    page_margin_left_mm: float = 30
    page_margin_right_mm: float = 20
    page_margin_top_mm: float = 30
    page_margin_bottom_mm: float = 20
    paragraph_indent_mm: float = 12.5

    # Reflowable (DOCX) typography
    docx_font_name: str = 'Times New Roman'
    docx_body_font_size: float = 12
    docx_line_spacing: float = 1.5

    page_number_style: Literal['number', 'page_of_total'] = 'number'
    signature_city: str = 'Rio de Janeiro'

    def exports_dir(self) -> Path:
        return self.data_dir / 'exports'


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.exports_dir().mkdir(parents=True, exist_ok=True)
    return settings
