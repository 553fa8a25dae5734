from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Iterable

import httpx
from pydantic import ValidationError

from ..adapters.image_cache import ImageCache
from ..config import Settings, get_settings
from ..storage import append_event, safe_filename, write_bytes_atomic
from ..types import (
    Activity,
    ActivityType,
    ExportFormat,
    ExportRequest,
    JustificationReportData,
    ObjectReportData,
    PhotoSet,
    ReportKind,
    TeamReportData,
)
from .blocks import Paragraph, Run
from .canvas_pdf import PageMetrics, render_pdf
from .header_footer import HeaderFooterConfig, resolve_header_footer
from .reflow_docx import render_docx
from .rich_content import parse_narrative
from .story import (
    ActivityEntry,
    ActivityList,
    CoverPage,
    DataTable,
    Field,
    FieldList,
    Heading,
    PhotoAttachments,
    ReportStory,
    RichText,
    Signature,
    photo_clusters,
    url_clusters,
)


logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ExportFormat.pdf: 'application/pdf',
    ExportFormat.docx: 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
}

FILENAME_PREFIXES = {
    ReportKind.object: 'Report',
    ReportKind.team: 'Team_Report',
    ReportKind.justification: 'Extension_Justification',
}

NOT_PROVIDED = '[not provided]'
TEAM_PHOTO_CAPTION = 'Photographic record of the activities carried out'

OBJECT_PLACEHOLDERS = {
    'object': '[Description of the object]',
    'summary': '[Summary of the activities]',
    'goal': '[Describe what the goal achieved]',
    'other': '[Other information about the actions carried out]',
    'communication': '[Publications and communication actions]',
    'satisfaction': '[Satisfaction of the target audience]',
    'future': '[About the future actions]',
}

JUSTIFICATION_SECTIONS = (
    ('object_section', '1. Object of the amendment'),
    ('justification_section', '2. Justification for the extension'),
    ('executed_actions_section', '3. Actions already executed (partial results)'),
    ('future_actions_section', '4. Future actions planned for the extension period'),
    ('requested_deadline_section', '5. Requested deadline'),
    ('attachments_section', '6. Attachments'),
)

_MONTHS = (
    'January', 'February', 'March', 'April', 'May', 'June',
    'July', 'August', 'September', 'October', 'November', 'December',
)
_WHITESPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class ExportArtifact:
    filename: str
    content: bytes
    media_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ExportResult:
    ok: bool
    artifact: ExportArtifact | None = None
    message: str = ''
    error: str = ''
    warnings: list[str] = field(default_factory=list)
    page_count: int | None = None

    def summary(self) -> dict[str, Any]:
        row: dict[str, Any] = {
            'ok': self.ok,
            'message': self.message,
            'warnings': list(self.warnings),
        }
        if self.artifact is not None:
            row.update(
                filename=self.artifact.filename,
                media_type=self.artifact.media_type,
                bytes=self.artifact.size,
            )
        if self.page_count is not None:
            row['page_count'] = self.page_count
        if self.error:
            row['error'] = self.error
        return row


def format_long_date(value: date) -> str:
    return f'{value.day} {_MONTHS[value.month - 1]} {value.year}'


def format_short_date(value: date) -> str:
    return value.strftime('%d/%m/%Y')


def format_activity_date(activity: Activity) -> str:
    start = format_short_date(activity.date)
    if activity.end_date is not None:
        return f'{start} to {format_short_date(activity.end_date)}'
    return start


def format_period(start: date, end: date) -> str:
    return f'{start.strftime("%m/%Y")} to {end.strftime("%m/%Y")}'


def build_filename(kind: ReportKind, identity: str, export_format: ExportFormat, *, today: date) -> str:
    token = _WHITESPACE_RE.sub('_', str(identity or '').strip()) or 'untitled'
    return safe_filename(f'{FILENAME_PREFIXES[kind]}_{token}_{today.isoformat()}.{export_format.value}')


def _narrative(text: str, *, markup_format: str, placeholder: str = '') -> RichText:
    value = str(text or '').strip()
    if not value and placeholder:
        value = placeholder
    return RichText(tuple(parse_narrative(value, markup_format=markup_format)))


def _sorted_activities(activities: Iterable[Activity]) -> list[Activity]:
    return sorted(activities, key=lambda activity: activity.date)


def _activity_photos(activities: Iterable[Activity], *, prefix: str) -> PhotoSet:
    urls = [url for activity in activities for url in activity.photos]
    return PhotoSet.from_urls(urls, prefix=prefix)


def _object_story(
    report: ObjectReportData,
    *,
    settings: Settings,
    visual_cover_title: str,
    visual_cover_subtitle: str,
    today: date,
) -> ReportStory:
    project = report.project
    fmt = report.narrative_format
    story = ReportStory(title=visual_cover_title or report.report_title, author=project.organization_name)
    cover_lines = (f'Grant agreement no. {project.fomento_number}',) if project.fomento_number.strip() else ()
    story.add(
        CoverPage(
            title=visual_cover_title or report.report_title,
            subtitle=visual_cover_subtitle,
            project_name=project.name,
            lines=cover_lines,
            organization=project.organization_name,
        )
    )

    activities = list(report.activities)
    communication_types = {ActivityType.communication}
    other_types = {ActivityType.other, ActivityType.administrative, ActivityType.incident}

    for section in report.sections:
        if not section.is_visible:
            continue
        story.add(Heading(section.title, level=1))
        key = section.key

        if key == 'object':
            story.add(_narrative(report.object_text, markup_format=fmt, placeholder=OBJECT_PLACEHOLDERS['object']))
        elif key == 'summary':
            story.add(_narrative(report.summary, markup_format=fmt, placeholder=OBJECT_PLACEHOLDERS['summary']))
        elif key == 'goals':
            for goal in project.goals:
                goal_activities = _sorted_activities(a for a in activities if a.goal_id == goal.id)
                story.add(
                    Heading(goal.title, level=2),
                    _narrative(
                        report.goal_narratives.get(goal.id, ''),
                        markup_format=fmt,
                        placeholder=OBJECT_PLACEHOLDERS['goal'],
                    ),
                )
                if goal_activities:
                    story.add(
                        ActivityList(
                            label='Activities carried out:',
                            entries=tuple(_activity_entry(a) for a in goal_activities),
                        )
                    )
                photos = report.goal_photos.get(goal.id, PhotoSet()).merged_with(
                    _activity_photos(goal_activities, prefix=f'goal-{goal.id}-activity')
                )
                story.add(_photo_records(photos, goal.title))
        elif key in ('other', 'communication'):
            wanted = communication_types if key == 'communication' else other_types
            related = _sorted_activities(a for a in activities if a.type in wanted)
            if key == 'communication':
                narrative, section_photos = report.communication_narrative, report.communication_photos
                label, photo_label = 'Communication activities:', 'PUBLICATIONS AND COMMUNICATION'
            else:
                narrative, section_photos = report.other_actions_narrative, report.other_actions_photos
                label, photo_label = 'Related activities:', 'OTHER ACTIONS'
            story.add(_narrative(narrative, markup_format=fmt, placeholder=OBJECT_PLACEHOLDERS[key]))
            if related:
                story.add(
                    ActivityList(
                        label=label,
                        entries=tuple(
                            ActivityEntry(headline=f'{format_short_date(a.date)}: {a.description.strip()}')
                            for a in related
                        ),
                    )
                )
            photos = section_photos.merged_with(_activity_photos(related, prefix=f'{key}-activity'))
            story.add(_photo_records(photos, photo_label))
        elif key == 'satisfaction':
            story.add(_narrative(report.satisfaction, markup_format=fmt, placeholder=OBJECT_PLACEHOLDERS['satisfaction']))
        elif key == 'future':
            story.add(_narrative(report.future_actions, markup_format=fmt, placeholder=OBJECT_PLACEHOLDERS['future']))
        elif key == 'expenses':
            if report.expenses:
                story.add(
                    DataTable(
                        columns=('Expense item', 'Description of use'),
                        rows=tuple(
                            (item.item_name.strip() or '-', item.description.strip() or '-')
                            for item in report.expenses
                        ),
                        widths=(0.4, 0.6),
                    )
                )
                evidence = [item.image for item in report.expenses if item.image.strip()]
                story.add(
                    PhotoAttachments(
                        title='PHOTOGRAPHIC RECORDS - EXPENSES',
                        clusters=url_clusters(evidence),
                    )
                )
            else:
                story.add(_narrative('[No expense items registered]', markup_format='html'))
        elif key == 'links':
            links = report.links
            story.add(
                FieldList(
                    fields=(
                        Field('Attendance list', links.attendance.strip() or NOT_PROVIDED),
                        Field('Registration list', links.registration.strip() or NOT_PROVIDED),
                        Field('Media (photos/videos)', links.media.strip() or NOT_PROVIDED),
                    )
                )
            )
        elif section.type == 'custom' and section.content.strip():
            story.add(_narrative(section.content, markup_format=fmt))

    story.add(
        Signature(
            place_date=f'{settings.signature_city}, {format_long_date(today)}.',
            label='Signature of the person responsible',
            name=project.organization_name,
        )
    )
    return story


def _activity_entry(activity: Activity) -> ActivityEntry:
    headline = format_activity_date(activity)
    if activity.location.strip():
        headline += f' - {activity.location.strip()}'
    if activity.attendees_count > 0:
        headline += f' - {activity.attendees_count} participants'
    return ActivityEntry(headline=headline, details=activity.description.strip())


def _photo_records(photos: PhotoSet, label: str) -> PhotoAttachments:
    return PhotoAttachments(
        title=f'PHOTOGRAPHIC RECORDS - {label.strip().upper()}',
        clusters=photo_clusters(photos),
    )


def _team_story(report: TeamReportData, *, settings: Settings, today: date) -> ReportStory:
    project = report.project
    fmt = report.narrative_format
    story = ReportStory(title=report.report_title, author=report.responsible_name)
    story.add(
        Heading(report.report_title.upper(), level=0),
        FieldList(
            fields=(
                Field('Grant agreement no.', project.fomento_number),
                Field('Project', project.name),
                Field('Reference period', format_period(report.period_start, report.period_end)),
            )
        ),
        Heading('1. Identification data', level=1),
        FieldList(
            fields=(
                Field('Provider', report.provider_name.strip() or NOT_PROVIDED),
                Field('Technical lead', report.responsible_name),
                Field('Role', report.function_role),
            ),
            bulleted=True,
        ),
        Heading(report.execution_report_title, level=1),
        _narrative(report.execution_report, markup_format=fmt, placeholder='[No report provided]'),
    )
    for extra in report.additional_sections:
        if not extra.title.strip() and not extra.content.strip():
            continue
        story.add(Heading(extra.title, level=1), _narrative(extra.content, markup_format=fmt))

    story.add(
        PhotoAttachments(
            title=report.attachments_title,
            clusters=photo_clusters(report.photos, default_caption=TEAM_PHOTO_CAPTION),
        ),
        Signature(
            place_date=f'{settings.signature_city}, {format_long_date(today)}.',
            label='Signature of the legal representative',
            extras=(
                Field('Name and role', f'{report.responsible_name} - {report.function_role}'.strip(' -')),
                Field('Tax ID', report.provider_document.strip() or NOT_PROVIDED),
            ),
        ),
    )
    return story


def _justification_story(report: JustificationReportData, *, settings: Settings, today: date) -> ReportStory:
    project = report.project
    fmt = report.narrative_format
    story = ReportStory(title=report.report_title, author=project.organization_name)
    story.add(
        Heading(report.report_title.upper(), level=0),
        FieldList(
            fields=(
                Field('Project', project.name),
                Field('Grant agreement no.', project.fomento_number),
                Field('Organization', project.organization_name),
            )
        ),
    )
    if project.funder.strip():
        story.add(RichText((Paragraph(runs=(Run(f'To {project.funder.strip()},'),)),)))

    for attr, title in JUSTIFICATION_SECTIONS:
        story.add(Heading(title, level=1), _narrative(getattr(report, attr), markup_format=fmt))
        if attr == 'requested_deadline_section' and report.new_deadline_date is not None:
            story.add(FieldList(fields=(Field('New deadline', format_long_date(report.new_deadline_date)),)))

    files = [item for item in report.attachment_files if item.name.strip()]
    if files:
        story.add(
            ActivityList(
                label='Attached documents:',
                entries=tuple(
                    ActivityEntry(headline=f'{index}. {item.name.strip()}', details=item.url.strip())
                    for index, item in enumerate(files, start=1)
                ),
            )
        )

    story.add(
        Signature(
            place_date=f'{settings.signature_city}, {format_long_date(today)}.',
            label='Signature of the legal representative',
            name=project.organization_name,
        )
    )
    return story


def build_story(request: ExportRequest, *, settings: Settings | None = None, today: date | None = None) -> ReportStory:
    settings = settings or get_settings()
    today = today or date.today()
    report = request.report
    if isinstance(report, ObjectReportData):
        return _object_story(
            report,
            settings=settings,
            visual_cover_title=request.visual_config.cover_title.strip(),
            visual_cover_subtitle=request.visual_config.cover_subtitle.strip(),
            today=today,
        )
    if isinstance(report, TeamReportData):
        return _team_story(report, settings=settings, today=today)
    if isinstance(report, JustificationReportData):
        return _justification_story(report, settings=settings, today=today)
    raise TypeError(f'unsupported report payload: {type(report).__name__}')


def export_identity(request: ExportRequest) -> str:
    report = request.report
    if isinstance(report, TeamReportData):
        return report.responsible_name
    return report.project.name


async def _render(
    request: ExportRequest,
    *,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None,
    today: date,
) -> tuple[ExportArtifact, int | None, list[str]]:
    story = build_story(request, settings=settings, today=today)
    organization = request.report.project

    async with ImageCache.from_settings(settings, transport=transport) as cache:
        header_footer: HeaderFooterConfig = await resolve_header_footer(
            request.visual_config,
            cache,
            organization=organization,
        )
        await cache.prefetch(story.image_urls())
        stats = cache.stats()
        warnings = [f'image unavailable: {url[:160]}' for url in cache.failed_urls()]
        logger.info(
            'images resolved requested=%d loaded=%d failed=%d',
            stats.requested,
            stats.loaded,
            stats.failed,
        )

        page_count: int | None = None
        if request.format == ExportFormat.pdf:
            content, page_count = render_pdf(
                story,
                header_footer,
                cache.peek,
                metrics=PageMetrics.from_settings(settings),
                producer=settings.producer,
            )
        else:
            content = render_docx(story, header_footer, cache.peek, settings=settings)

    filename = build_filename(request.kind, export_identity(request), request.format, today=today)
    artifact = ExportArtifact(filename=filename, content=content, media_type=MEDIA_TYPES[request.format])
    return artifact, page_count, warnings


async def export_report(
    request: ExportRequest | dict[str, Any],
    *,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    today: date | None = None,
) -> ExportResult:
    """Build one report artifact.

    Never raises: invalid payloads and renderer failures come back as a
    failed :class:`ExportResult` and an ``export_failed`` event.
    """
    settings = settings or get_settings()
    today = today or date.today()
    started = time.monotonic()
    kind = ''
    export_format = ''
    try:
        if not isinstance(request, ExportRequest):
            request = ExportRequest.model_validate(request)
        kind = request.kind.value
        export_format = request.format.value
        artifact, page_count, warnings = await _render(request, settings=settings, transport=transport, today=today)
    except ValidationError as exc:
        logger.warning('export payload rejected errors=%d', exc.error_count())
        append_event('export_failed', settings=settings, kind=kind, format=export_format, error=str(exc))
        return ExportResult(ok=False, message='Invalid report payload.', error=str(exc))
    except Exception as exc:
        logger.exception('export failed kind=%s format=%s', kind, export_format)
        append_event('export_failed', settings=settings, kind=kind, format=export_format, error=str(exc))
        return ExportResult(ok=False, message='Export failed.', error=f'{type(exc).__name__}: {exc}')

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        'export completed kind=%s format=%s filename=%s bytes=%d elapsed_ms=%d',
        kind,
        export_format,
        artifact.filename,
        artifact.size,
        elapsed_ms,
    )
    append_event(
        'export_completed',
        settings=settings,
        kind=kind,
        format=export_format,
        filename=artifact.filename,
        bytes=artifact.size,
        page_count=page_count,
        failed_images=len(warnings),
        elapsed_ms=elapsed_ms,
    )
    return ExportResult(
        ok=True,
        artifact=artifact,
        message=f'{artifact.filename} generated.',
        warnings=warnings,
        page_count=page_count,
    )


def export_report_sync(request: ExportRequest | dict[str, Any], **kwargs: Any) -> ExportResult:
    return asyncio.run(export_report(request, **kwargs))


def write_artifact(result: ExportResult, out_dir: Path) -> Path:
    if not result.ok or result.artifact is None:
        raise ValueError(f'nothing to write: {result.message or result.error}')
    path = Path(out_dir) / safe_filename(result.artifact.filename)
    write_bytes_atomic(path, result.artifact.content)
    return path
