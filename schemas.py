"""Request body models.

Every JSON body accepted by the API is parsed into one of these models before a
route touches the database. Unknown fields are rejected (``extra='forbid'``), so
callers get a deterministic 400 with the pydantic error list instead of having
stray keys written into documents.
"""
import json
import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional

import pydantic
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from flask import request

import config
from errors import ValidationError
from grading import GRADE_POINTS
from reminders import CAMPUS_TZ, is_valid_offset

TIME_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
DOMAIN_RE = re.compile(r'^[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')


class StrictModel(BaseModel):
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True, populate_by_name=True)


def parse_body(model_cls):
    """Validate the JSON request body against ``model_cls``."""
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Request body must be JSON")
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid request body", details=json.loads(e.json(include_url=False)))


def parse_page():
    """Read ``page``/``limit`` query args with bounds."""
    try:
        page = int(request.args.get('page', 1))
        limit = int(request.args.get('limit', config.DEFAULT_PAGE_SIZE))
    except ValueError:
        raise ValidationError("page and limit must be integers")
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > config.MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {config.MAX_PAGE_SIZE}")
    return page, limit


def _email(value):
    value = value.strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError('Invalid email address')
    return value


Email = Annotated[str, AfterValidator(_email)]


def _campus_time(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=CAMPUS_TZ)
    return value


# Calendar dates without an offset are campus wall-clock time
CampusDatetime = Annotated[datetime, AfterValidator(_campus_time)]


# --- Auth & profile ---
class RegisterIn(StrictModel):
    name: str = Field(min_length=1, max_length=100)
    email: Email
    password: str = Field(min_length=6)
    student_id: Optional[str] = Field(None, pattern=r'^\d+$')


class VerifyIn(StrictModel):
    email: Email
    code: str = Field(min_length=1)


class EmailIn(StrictModel):
    email: Email


class LoginIn(StrictModel):
    email: Email
    password: str = Field(min_length=1)


class RefreshIn(StrictModel):
    refresh_token: str = Field(min_length=1)


class PreferencesIn(StrictModel):
    pinned_calendar_ids: Optional[List[str]] = None
    focus_mode: Optional[bool] = None
    career_goal: Optional[str] = None
    target_cgpa: Optional[float] = Field(None, ge=0, le=4)
    time_format: Optional[Literal['12h', '24h']] = None


class ProfileUpdate(StrictModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    student_id: Optional[str] = Field(None, pattern=r'^\d+$')
    preferences: Optional[PreferencesIn] = None


class ChangePasswordIn(StrictModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


# --- Faculty & reviews ---
class FacultyIn(StrictModel):
    name: str = Field(min_length=1)
    initials: str = Field(min_length=1, max_length=10)
    department: str = Field(min_length=1)
    designation: str = 'Lecturer'
    email: str = ''
    phone: str = ''
    office: str = ''
    website: str = ''
    github: str = ''
    linkedin: str = ''
    scholar: str = ''
    bio: str = ''


class FacultyUpdate(StrictModel):
    name: Optional[str] = Field(None, min_length=1)
    initials: Optional[str] = Field(None, min_length=1, max_length=10)
    department: Optional[str] = Field(None, min_length=1)
    designation: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    office: Optional[str] = None
    website: Optional[str] = None
    github: Optional[str] = None
    linkedin: Optional[str] = None
    scholar: Optional[str] = None
    bio: Optional[str] = None
    is_approved: Optional[bool] = None


class RatingsIn(StrictModel):
    teaching: int = Field(ge=1, le=5)
    grading: int = Field(ge=1, le=5)
    friendliness: int = Field(ge=1, le=5)
    availability: int = Field(ge=1, le=5)


class CourseEntryIn(StrictModel):
    course_code: str = Field(min_length=1)
    trimester: str = Field(min_length=1)


class ReviewUpdate(StrictModel):
    course_history: List[CourseEntryIn] = Field(min_length=1)
    ratings: RatingsIn
    comment: str = Field(min_length=10, max_length=1000)
    difficulty: Literal['Easy', 'Medium', 'Hard']
    would_take_again: bool


class ReviewIn(ReviewUpdate):
    faculty_id: str = Field(min_length=1)
    anonymous_name: str = Field(min_length=2, max_length=30)


class ReactIn(StrictModel):
    action: Literal['like', 'dislike']


# --- Question bank ---
class FolderIn(StrictModel):
    name: str = Field(min_length=1)
    parent_id: Optional[str] = None


class FileOrderIn(StrictModel):
    file_id: str
    order: int


class FolderUpdate(StrictModel):
    name: Optional[str] = Field(None, min_length=1)
    order: Optional[int] = None
    parent_id: Optional[str] = None
    file_orders: Optional[List[FileOrderIn]] = None


class FolderOrderIn(StrictModel):
    id: str
    order: int


class FolderFileOrdersIn(StrictModel):
    folder_id: str
    orders: List[FileOrderIn]


class ReorderIn(StrictModel):
    folder_orders: Optional[List[FolderOrderIn]] = None
    file_orders: Optional[FolderFileOrdersIn] = None


# --- Calendars & courses ---
class CustomFieldIn(StrictModel):
    label: str
    value: str = ''


class UserEventIn(StrictModel):
    id: Optional[str] = Field(None, alias='_id')
    title: str = Field(min_length=1)
    description: str = ''
    date: CampusDatetime
    end_date: Optional[CampusDatetime] = None
    start_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    category: Literal['class', 'assignment', 'exam', 'personal', 'reminder', 'other'] = 'other'
    color: Optional[str] = None
    completed: bool = False
    recurrence_group_id: Optional[str] = None
    custom_fields: List[CustomFieldIn] = []


class TodoIn(StrictModel):
    id: Optional[str] = Field(None, alias='_id')
    text: str = Field(min_length=1)
    completed: bool = False
    due_date: Optional[CampusDatetime] = None
    due_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    priority: Literal['low', 'medium', 'high'] = 'medium'


class UserCalendarIn(StrictModel):
    title: str = Field(min_length=1)
    description: str = ''
    color: str = '#f97316'
    events: List[UserEventIn] = []
    todos: List[TodoIn] = []


class UserCalendarUpdate(StrictModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    color: Optional[str] = None
    events: Optional[List[UserEventIn]] = None
    todos: Optional[List[TodoIn]] = None


class AcademicEventIn(StrictModel):
    id: Optional[str] = Field(None, alias='_id')
    title: str = Field(min_length=1)
    description: str = ''
    start_date: CampusDatetime
    end_date: Optional[CampusDatetime] = None
    start_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    category: Literal['registration', 'classes', 'exam', 'holiday', 'deadline', 'event', 'other'] = 'other'
    color: Optional[str] = None
    recurrence_group_id: Optional[str] = None
    custom_fields: List[CustomFieldIn] = []


class AcademicCalendarIn(StrictModel):
    title: str = Field(min_length=1)
    description: str = ''
    note: str = ''
    term_code: str = Field(min_length=1)
    program: str = ''
    trimester: str = ''
    start_date: Optional[CampusDatetime] = None
    end_date: Optional[CampusDatetime] = None
    events: List[AcademicEventIn] = []
    published: bool = False

    @field_validator('term_code')
    @classmethod
    def lower_term_code(cls, value):
        return value.lower()


class AcademicCalendarUpdate(StrictModel):
    title: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    note: Optional[str] = None
    term_code: Optional[str] = Field(None, min_length=1)
    program: Optional[str] = None
    trimester: Optional[str] = None
    start_date: Optional[CampusDatetime] = None
    end_date: Optional[CampusDatetime] = None
    events: Optional[List[AcademicEventIn]] = None
    published: Optional[bool] = None

    @field_validator('term_code')
    @classmethod
    def lower_term_code(cls, value):
        return value.lower() if value else value


class CourseIn(StrictModel):
    code: str = Field(min_length=1)
    title: str = Field(min_length=1)
    credit: float = Field(ge=0)
    department: str = ''
    prerequisites: List[str] = []
    type: Literal['Core', 'Elective', 'GED', 'Project', 'Thesis'] = 'Core'

    @field_validator('code')
    @classmethod
    def upper_code(cls, value):
        return value.upper()


class CourseUpdate(StrictModel):
    code: Optional[str] = Field(None, min_length=1)
    title: Optional[str] = Field(None, min_length=1)
    credit: Optional[float] = Field(None, ge=0)
    department: Optional[str] = None
    prerequisites: Optional[List[str]] = None
    type: Optional[Literal['Core', 'Elective', 'GED', 'Project', 'Thesis']] = None

    @field_validator('code')
    @classmethod
    def upper_code(cls, value):
        return value.upper() if value else value


# --- Reminders ---
def _known_offsets(value):
    for offset in value:
        if not is_valid_offset(offset):
            raise ValueError(f'Unknown reminder offset: {offset}')
    return value


class ReminderIn(StrictModel):
    calendar_id: str = Field(min_length=1)
    calendar_type: Literal['academic', 'personal'] = 'academic'
    calendar_title: str = ''
    event_id: Optional[str] = None
    event_title: str = Field(min_length=1)
    event_date: CampusDatetime
    event_start_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    event_end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    event_category: Optional[str] = None
    reminder_offsets: List[str] = ['1d', 'morning']
    apply_to_series: bool = False
    recurrence_group_id: Optional[str] = None

    @field_validator('reminder_offsets')
    @classmethod
    def known_offsets(cls, value):
        return _known_offsets(value)


class ReminderCallbackIn(StrictModel):
    user_id: Optional[str] = None
    user_email: str = Field(min_length=3)
    user_name: Optional[str] = None
    event_title: str = Field(min_length=1)
    event_date: CampusDatetime
    event_start_time: Optional[str] = None
    event_end_time: Optional[str] = None
    event_category: Optional[str] = None
    calendar_title: Optional[str] = None
    calendar_id: Optional[str] = None
    calendar_type: Optional[str] = None
    offset: str


class BulkEventIn(StrictModel):
    event_id: str = Field(min_length=1, alias='_id')
    title: str = Field(min_length=1)
    date: CampusDatetime
    start_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    category: Optional[str] = None


class BulkReminderIn(StrictModel):
    action: Literal['subscribe', 'unsubscribe']
    calendar_id: str = Field(min_length=1)
    calendar_type: Literal['academic', 'personal'] = 'academic'
    calendar_title: str = ''
    events: List[BulkEventIn] = []
    reminder_offsets: List[str] = ['1d', 'morning']

    @field_validator('reminder_offsets')
    @classmethod
    def known_offsets(cls, value):
        return _known_offsets(value)

    @model_validator(mode='after')
    def events_to_subscribe(self):
        if self.action == 'subscribe' and not self.events:
            raise ValueError('No events provided')
        return self


class DigestIn(StrictModel):
    action: Literal['subscribe', 'unsubscribe']
    calendar_id: str = Field(min_length=1)
    calendar_type: Literal['academic', 'personal'] = 'academic'
    calendar_title: str = ''
    time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    # minutes behind UTC, as browsers report it (UTC+6 -> -360)
    timezone_offset: Optional[int] = Field(None, ge=-14 * 60, le=12 * 60)
    notify_on_empty_days: bool = False

    @model_validator(mode='after')
    def time_to_subscribe(self):
        if self.action == 'subscribe' and (self.time is None or self.timezone_offset is None):
            raise ValueError('time and timezone_offset are required to subscribe')
        return self


class DigestCallbackIn(StrictModel):
    user_id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    notify_on_empty_days: bool = False


class CalendarCommentIn(StrictModel):
    date: CampusDatetime
    text: str = Field(min_length=1, max_length=500)
    calendar_type: Literal['academic', 'user', 'personal'] = 'academic'


# --- CGPA ---
class AssessmentIn(StrictModel):
    name: str = ''
    total_marks: float = Field(ge=0)
    obtained_marks: float = Field(ge=0)
    weight: float = Field(ge=0)
    is_ct: bool = False


class CourseGradeIn(StrictModel):
    name: str = ''
    code: str = ''
    credit: float = Field(ge=0)
    grade: Optional[str] = None
    is_retake: bool = False
    previous_grade: Optional[str] = None
    assessments: List[AssessmentIn] = []

    @field_validator('grade', 'previous_grade')
    @classmethod
    def known_grade(cls, value):
        if value and value not in GRADE_POINTS:
            raise ValueError(f'Unknown grade: {value}')
        return value or None


class TrimesterIn(StrictModel):
    name: str = ''
    code: str = Field(min_length=1)
    is_completed: bool = False
    courses: List[CourseGradeIn] = []


class CGPARecordIn(StrictModel):
    previous_credits: float = Field(0, ge=0)
    previous_cgpa: float = Field(0, ge=0, le=4)
    trimesters: List[TrimesterIn] = []


# --- Admin ---
class UserAdminUpdate(StrictModel):
    role: Optional[Literal['user', 'admin']] = None
    permissions: Optional[List[str]] = None

    @model_validator(mode='after')
    def something_to_update(self):
        if self.role is None and self.permissions is None:
            raise ValueError('Nothing to update')
        return self


class DomainsIn(StrictModel):
    domains: List[str] = Field(min_length=1)

    @field_validator('domains')
    @classmethod
    def valid_domains(cls, value):
        cleaned = []
        for domain in value:
            domain = domain.strip().lower()
            if not DOMAIN_RE.match(domain):
                raise ValueError(f'Invalid domain format: {domain}')
            cleaned.append(domain)
        return cleaned
