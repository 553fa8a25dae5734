from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Union

from ..types import PhotoSet
from .blocks import Block, image_sources


@dataclass(frozen=True)
class CoverPage:
    title: str
    subtitle: str = ''
    project_name: str = ''
    lines: tuple[str, ...] = ()
    organization: str = ''


@dataclass(frozen=True)
class Heading:
    text: str
    # 0: centered document title, 1: section title, 2: sub-section title
    level: int = 1


@dataclass(frozen=True)
class RichText:
    blocks: tuple[Block, ...]


@dataclass(frozen=True)
class Field:
    label: str
    value: str


@dataclass(frozen=True)
class FieldList:
    fields: tuple[Field, ...]
    bulleted: bool = False


@dataclass(frozen=True)
class ActivityEntry:
    headline: str
    details: str = ''


@dataclass(frozen=True)
class ActivityList:
    label: str
    entries: tuple[ActivityEntry, ...]


@dataclass(frozen=True)
class DataTable:
    columns: tuple[str, ...]
    rows: tuple[tuple[str, ...], ...]
    # relative column weights; empty means equal widths
    widths: tuple[float, ...] = ()

    def column_fractions(self) -> list[float]:
        weights = list(self.widths[: len(self.columns)])
        weights += [1.0] * (len(self.columns) - len(weights))
        total = sum(max(0.0, w) for w in weights) or float(len(weights) or 1)
        return [max(0.0, w) / total for w in weights]


@dataclass(frozen=True)
class StoryPhoto:
    src: str
    caption: str = ''


@dataclass(frozen=True)
class PhotoCluster:
    """Photos laid out together.

    A non-empty ``shared_caption`` replaces the per-photo captions with one
    caption under the whole cluster.
    """

    photos: tuple[StoryPhoto, ...]
    shared_caption: str = ''

    @property
    def grouped(self) -> bool:
        return bool(self.shared_caption.strip())


@dataclass(frozen=True)
class PhotoAttachments:
    title: str
    clusters: tuple[PhotoCluster, ...]
    new_page: bool = True

    @property
    def photo_count(self) -> int:
        return sum(len(cluster.photos) for cluster in self.clusters)


@dataclass(frozen=True)
class Signature:
    place_date: str
    label: str
    name: str = ''
    extras: tuple[Field, ...] = ()


@dataclass(frozen=True)
class SectionBreak:
    pass


StoryElement = Union[
    CoverPage,
    Heading,
    RichText,
    FieldList,
    ActivityList,
    DataTable,
    PhotoAttachments,
    Signature,
    SectionBreak,
]


@dataclass
class ReportStory:
    title: str
    elements: list[StoryElement] = field(default_factory=list)
    author: str = ''

    def add(self, *elements: StoryElement) -> ReportStory:
        self.elements.extend(elements)
        return self

    def image_urls(self) -> list[str]:
        """Body image URLs in document order, duplicates kept."""
        urls: list[str] = []
        for element in self.elements:
            if isinstance(element, RichText):
                urls.extend(image_sources(element.blocks))
            elif isinstance(element, PhotoAttachments):
                for cluster in element.clusters:
                    urls.extend(photo.src for photo in cluster.photos)
        return urls

    @property
    def has_cover(self) -> bool:
        return any(isinstance(element, CoverPage) for element in self.elements)


def photo_clusters(photo_set: PhotoSet, *, default_caption: str = '') -> tuple[PhotoCluster, ...]:
    """Split a photo set into clusters, keeping the order of ``photo_set.photos``.

    Each group becomes one cluster at the position of its first photo; runs of
    ungrouped photos form per-photo-caption clusters between them.
    """
    by_id = {photo.id: photo for photo in photo_set.photos}
    group_of: dict[str, int] = {}
    for index, group in enumerate(photo_set.groups):
        for photo_id in group.photo_ids:
            if photo_id in by_id:
                group_of.setdefault(photo_id, index)

    clusters: list[PhotoCluster] = []
    loose: list[StoryPhoto] = []
    emitted_groups: set[int] = set()

    def flush_loose() -> None:
        if loose:
            clusters.append(PhotoCluster(photos=tuple(loose)))
            loose.clear()

    for photo in photo_set.photos:
        url = str(photo.url or '').strip()
        if not url:
            continue
        group_index = group_of.get(photo.id)
        if group_index is None:
            loose.append(StoryPhoto(src=url, caption=photo.caption.strip() or default_caption))
            continue
        if group_index in emitted_groups:
            continue
        emitted_groups.add(group_index)
        flush_loose()
        group = photo_set.groups[group_index]
        members = [by_id[pid] for pid in group.photo_ids if group_of.get(pid) == group_index]
        clusters.append(
            PhotoCluster(
                photos=tuple(
                    StoryPhoto(src=m.url.strip(), caption=m.caption.strip() or default_caption)
                    for m in members
                    if m.url.strip()
                ),
                shared_caption=group.shared_caption.strip(),
            )
        )
    flush_loose()
    return tuple(cluster for cluster in clusters if cluster.photos)


def url_clusters(urls: Iterable[str], *, caption: str = '') -> tuple[PhotoCluster, ...]:
    photos = tuple(StoryPhoto(src=url.strip(), caption=caption) for url in urls if str(url or '').strip())
    return (PhotoCluster(photos=photos),) if photos else ()
