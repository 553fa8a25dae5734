from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Union


@dataclass(frozen=True)
class Run:
    text: str
    bold: bool = False
    italic: bool = False
    underline: bool = False

    def same_style(self, other: Run) -> bool:
        return (self.bold, self.italic, self.underline) == (other.bold, other.italic, other.underline)


@dataclass(frozen=True)
class Paragraph:
    runs: tuple[Run, ...] = ()


@dataclass(frozen=True)
class BulletItem:
    runs: tuple[Run, ...] = ()


@dataclass(frozen=True)
class OrderedItem:
    index: int
    runs: tuple[Run, ...] = ()


@dataclass(frozen=True)
class InlineImage:
    src: str
    caption: str | None = None
    width_percent: int = 100


@dataclass(frozen=True)
class GalleryImage:
    src: str
    caption: str = ''


@dataclass(frozen=True)
class Gallery:
    images: tuple[GalleryImage, ...] = field(default_factory=tuple)
    columns: int = 2


Block = Union[Paragraph, BulletItem, OrderedItem, InlineImage, Gallery]

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f]')


def strip_control_chars(text: str) -> str:
    """Drop C0 control characters that XML cannot carry; tab, newline and CR stay."""
    return _CONTROL_CHARS_RE.sub('', text)


def image_sources(blocks: Iterable[Block]) -> list[str]:
    """Image URLs referenced by ``blocks``, in document order."""
    sources: list[str] = []
    for block in blocks:
        if isinstance(block, InlineImage):
            sources.append(block.src)
        elif isinstance(block, Gallery):
            sources.extend(image.src for image in block.images)
    return sources


def block_to_dict(block: Block) -> dict[str, Any]:
    payload = asdict(block)
    payload['type'] = type(block).__name__
    return payload
