from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .report.blocks import strip_control_chars


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
    )

    @model_validator(mode='before')
    @classmethod
    def _clean_input(cls, data: Any) -> Any:
        # Editors send null for untouched fields; fall back to the declared defaults.
        # Pasted text may carry control characters that DOCX cannot store.
        if isinstance(data, dict):
            return {
                key: strip_control_chars(value) if isinstance(value, str) else value
                for key, value in data.items()
                if value is not None
            }
        return data


class ReportKind(str, Enum):
    object = 'object'
    team = 'team'
    justification = 'justification'


class ExportFormat(str, Enum):
    pdf = 'pdf'
    docx = 'docx'


class ActivityType(str, Enum):
    execution = 'execution'
    meeting = 'meeting'
    incident = 'incident'
    communication = 'communication'
    administrative = 'administrative'
    other = 'other'


NarrativeFormat = Literal['html', 'markdown']
Alignment = Literal['left', 'center', 'right']


class LogoConfig(_Model):
    visible: bool = True
    width_mm: float = 12


class VisualConfig(_Model):
    # Header
    header_banner_url: str = ''
    header_banner_height_mm: float = 25
    header_banner_visible: bool = True
    header_left_text: str = ''
    header_right_text: str = ''
    logo: str = ''
    logo_center: str = ''
    logo_secondary: str = ''
    logo_config: LogoConfig = Field(default_factory=LogoConfig)
    logo_center_config: LogoConfig = Field(default_factory=LogoConfig)
    logo_secondary_config: LogoConfig = Field(default_factory=LogoConfig)
    header_logo_alignment: Literal['left', 'center', 'right', 'space-between', 'space-around'] = 'space-between'
    header_logo_gap: float = 0
    header_top_padding: float = 5
    header_height: float = 20

    # Cover
    cover_title: str = ''
    cover_subtitle: str = ''

    # Footer
    footer_text: str = ''
    footer_show_address: bool = True
    footer_show_contact: bool = True
    footer_alignment: Alignment = 'center'
    footer_institutional_enabled: bool = True
    footer_line1_text: str = ''
    footer_line1_font_size: float | None = None
    footer_line2_text: str = ''
    footer_line2_font_size: float | None = None
    footer_line3_text: str = ''
    footer_line3_font_size: float | None = None
    footer_line_spacing: float = 3
    footer_top_spacing: float = 4


class Goal(_Model):
    id: str
    title: str


class ProjectInfo(_Model):
    id: str = ''
    name: str
    organization_name: str = ''
    organization_address: str = ''
    organization_email: str = ''
    organization_phone: str = ''
    organization_website: str = ''
    fomento_number: str = ''
    funder: str = ''
    goals: list[Goal] = Field(default_factory=list)


class Activity(_Model):
    id: str = ''
    goal_id: str | None = None
    date: date
    end_date: date | None = None
    location: str = ''
    type: ActivityType = ActivityType.execution
    description: str = ''
    attendees_count: int = 0
    photos: list[str] = Field(default_factory=list)


class PhotoItem(_Model):
    id: str
    url: str
    caption: str = ''

    @model_validator(mode='before')
    @classmethod
    def _from_url(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {'id': data, 'url': data}
        return data


class PhotoGroup(_Model):
    id: str = ''
    photo_ids: list[str] = Field(default_factory=list)
    shared_caption: str = ''


class PhotoSet(_Model):
    photos: list[PhotoItem] = Field(default_factory=list)
    groups: list[PhotoGroup] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def _from_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {'photos': data}
        return data

    @model_validator(mode='after')
    def _check_group_membership(self) -> PhotoSet:
        seen: dict[str, str] = {}
        for index, group in enumerate(self.groups):
            label = group.id or f'#{index}'
            for photo_id in group.photo_ids:
                if photo_id in seen and seen[photo_id] != label:
                    raise ValueError(
                        f'photo {photo_id!r} belongs to more than one group ({seen[photo_id]}, {label})'
                    )
                seen[photo_id] = label
        return self

    @classmethod
    def from_urls(cls, urls: list[str], *, prefix: str = 'photo') -> PhotoSet:
        return cls(
            photos=[
                PhotoItem(id=f'{prefix}-{index}', url=url)
                for index, url in enumerate(urls, start=1)
                if str(url or '').strip()
            ]
        )

    def merged_with(self, other: PhotoSet) -> PhotoSet:
        return PhotoSet(photos=[*self.photos, *other.photos], groups=[*self.groups, *other.groups])


class ExpenseItem(_Model):
    id: str = ''
    item_name: str = ''
    description: str = ''
    image: str = ''


class ReportLinks(_Model):
    attendance: str = ''
    registration: str = ''
    media: str = ''


class ReportSection(_Model):
    id: str = ''
    type: Literal['fixed', 'custom'] = 'fixed'
    key: str
    title: str
    content: str = ''
    is_visible: bool = True


class AdditionalSection(_Model):
    title: str
    content: str = ''


class AttachmentFile(_Model):
    name: str
    url: str = ''


def default_object_sections() -> list[ReportSection]:
    rows = [
        ('object', 'Object'),
        ('summary', 'Summary of activities'),
        ('goals', 'Goals and results achieved'),
        ('other', 'Other actions'),
        ('communication', 'Publications and communication'),
        ('satisfaction', 'Target audience satisfaction'),
        ('future', 'Future actions'),
        ('expenses', 'Expense items'),
        ('links', 'Supporting links'),
    ]
    return [ReportSection(id=key, key=key, title=title) for key, title in rows]


class ObjectReportData(_Model):
    kind: Literal['object'] = 'object'
    project: ProjectInfo
    activities: list[Activity] = Field(default_factory=list)
    sections: list[ReportSection] = Field(default_factory=default_object_sections)
    narrative_format: NarrativeFormat = 'html'
    report_title: str = 'Partial report on fulfillment of the object'

    object_text: str = ''
    summary: str = ''
    goal_narratives: dict[str, str] = Field(default_factory=dict)
    goal_photos: dict[str, PhotoSet] = Field(default_factory=dict)
    other_actions_narrative: str = ''
    other_actions_photos: PhotoSet = Field(default_factory=PhotoSet)
    communication_narrative: str = ''
    communication_photos: PhotoSet = Field(default_factory=PhotoSet)
    satisfaction: str = ''
    future_actions: str = ''
    expenses: list[ExpenseItem] = Field(default_factory=list)
    links: ReportLinks = Field(default_factory=ReportLinks)


class TeamReportData(_Model):
    kind: Literal['team'] = 'team'
    project: ProjectInfo
    narrative_format: NarrativeFormat = 'html'
    provider_name: str = ''
    provider_document: str = ''
    responsible_name: str
    function_role: str = ''
    period_start: date
    period_end: date
    execution_report: str = ''
    photos: PhotoSet = Field(default_factory=PhotoSet)
    additional_sections: list[AdditionalSection] = Field(default_factory=list)
    report_title: str = 'Team work report'
    execution_report_title: str = '2. Execution report of the project coordination'
    attachments_title: str = '3. Supporting attachments - photographic records'


class JustificationReportData(_Model):
    kind: Literal['justification'] = 'justification'
    project: ProjectInfo
    narrative_format: NarrativeFormat = 'html'
    object_section: str = ''
    justification_section: str = ''
    executed_actions_section: str = ''
    future_actions_section: str = ''
    requested_deadline_section: str = ''
    attachments_section: str = ''
    attachment_files: list[AttachmentFile] = Field(default_factory=list)
    new_deadline_date: date | None = None
    report_title: str = 'Justification for extension of the project deadline'


ReportPayload = Annotated[
    Union[ObjectReportData, TeamReportData, JustificationReportData],
    Field(discriminator='kind'),
]


class ExportRequest(_Model):
    format: ExportFormat = ExportFormat.pdf
    visual_config: VisualConfig = Field(default_factory=VisualConfig)
    report: ReportPayload

    @property
    def kind(self) -> ReportKind:
        return ReportKind(self.report.kind)
