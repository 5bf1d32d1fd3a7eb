"""
Domain models for the provider dashboard. Rows coming back from the data
store are validated into these; request bodies are validated by FastAPI.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator

from catering_ops.roles import ProviderRole, map_legacy_role


def _coerce_role(value: Any) -> Any:
    if isinstance(value, str):
        mapped = map_legacy_role(value)
        if mapped is not None:
            return mapped
    return value


# accepts legacy role names such as "manager"
Role = Annotated[ProviderRole, BeforeValidator(_coerce_role)]


class ShiftStatus(StrEnum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"


class AssigneeType(StrEnum):
    TEAM_MEMBER = "team_member"
    WORKER_PROFILE = "worker_profile"
    # third value: neither user_id nor worker_profile_id is set
    UNASSIGNED = "unassigned"


class MemberStatus(StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class WorkerStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BookingStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Shift(BaseModel):
    id: str
    provider_id: str | None = None
    booking_id: str | None = None
    user_id: str | None = None  # team member (has a login)
    worker_profile_id: str | None = None  # worker without a login
    role: str | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    status: ShiftStatus = ShiftStatus.SCHEDULED
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _single_assignee(self) -> "Shift":
        if self.user_id and self.worker_profile_id:
            raise ValueError(
                "a shift is assigned to a team member or a worker, not both"
            )
        return self


class WorkerSummary(BaseModel):
    id: str
    name: str
    phone: str | None = None
    role: str | None = None
    hourly_rate: float | None = None


class ShiftWithAssignee(Shift):
    full_name: str
    email: str | None = None  # email for team members, phone for workers
    avatar_url: str | None = None
    assignee_type: AssigneeType
    worker_profile: WorkerSummary | None = None


class UserMetadata(BaseModel):
    id: str | None = None
    email: str | None = None
    raw_user_meta_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("raw_user_meta_data", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return value or {}


class WorkerProfile(BaseModel):
    id: str
    provider_id: str
    user_id: str | None = None
    name: str
    phone: str | None = None
    role: str | None = None
    tags: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    hourly_rate: float | None = None
    availability: dict[str, Any] | None = None
    notes: str | None = None
    status: WorkerStatus = WorkerStatus.ACTIVE
    team_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ProviderMember(BaseModel):
    id: str
    provider_id: str
    user_id: str
    role: Role
    status: MemberStatus = MemberStatus.ACTIVE
    team_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TeamMemberWithUser(ProviderMember):
    full_name: str
    email: str
    avatar_url: str | None = None


class Invitation(BaseModel):
    id: str
    provider_id: str
    email: str
    role: Role
    invited_by: str | None = None
    token: str = ""
    expires_at: datetime | None = None
    accepted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Team(BaseModel):
    id: str
    provider_id: str
    name: str
    description: str | None = None
    service_location_id: str | None = None
    status: str = "active"
    created_at: datetime | None = None


class ServiceLocation(BaseModel):
    id: str
    provider_id: str
    province: str
    city: str
    barangay: str
    street_address: str | None = None
    postal_code: str | None = None
    landmark: str | None = None
    service_area_notes: str | None = None
    service_radius: int | None = None  # km
    is_primary: bool = False
    daily_capacity: int | None = None
    max_concurrent_events: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Booking(BaseModel):
    id: str
    provider_id: str
    customer_name: str | None = None
    event_date: date | None = None
    status: BookingStatus = BookingStatus.PENDING
    guest_count: int | None = None
    total_price: float | None = None
    team_id: str | None = None
    service_location_id: str | None = None
    source: str = "marketplace"  # "manual" for bookings entered by staff
    created_at: datetime | None = None


class Expense(BaseModel):
    id: str
    provider_id: str
    category: str
    amount: float
    expense_date: date
    description: str | None = None


class ExpenseItem(BaseModel):
    id: str
    category: str  # display label, e.g. "Food Supplies"
    amount: float
    expense_date: date


# Aggregates returned by the analytics stored procedures


class RevenueMetrics(BaseModel):
    total_revenue: float = 0
    confirmed_revenue: float = 0
    completed_revenue: float = 0
    previous_period_revenue: float = 0
    average_booking_value: float = 0
    period_start: date | None = None
    period_end: date | None = None


class BookingStatistics(BaseModel):
    total_bookings: int = 0
    pending_count: int = 0
    confirmed_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    cancelled_count: int = 0
    upcoming_bookings: int = 0
    total_guests: int = 0
    average_guests: float = 0
    period_start: date | None = None
    period_end: date | None = None


class StaffUtilization(BaseModel):
    total_shifts: int = 0
    scheduled_shifts: int = 0
    checked_in_shifts: int = 0
    completed_shifts: int = 0
    cancelled_shifts: int = 0
    total_scheduled_hours: float = 0
    total_actual_hours: float = 0
    unique_staff_count: int = 0
    team_member_shifts: int = 0
    worker_profile_shifts: int = 0
    period_start: date | None = None
    period_end: date | None = None


class CategoryTotal(BaseModel):
    category: str
    total: float
    count: int


class ExpenseSummary(BaseModel):
    total_expenses: float = 0
    expense_count: int = 0
    average_expense: float = 0
    by_category: list[CategoryTotal] = Field(default_factory=list)
    period_start: date | None = None
    period_end: date | None = None


class MonthlyTrendPoint(BaseModel):
    month: str  # "July"
    month_short: str  # "Jul"
    year: int
    bookings: int = 0
    revenue: float = 0
    expenses: float = 0
    net: float = 0


class DashboardAnalytics(BaseModel):
    revenue: RevenueMetrics
    bookings: BookingStatistics
    staff: StaffUtilization
    expenses: ExpenseSummary
    trends: list[MonthlyTrendPoint]


class Notification(BaseModel):
    level: str  # "success" | "error"
    title: str
    description: str | None = None
    created_at: datetime


# Request bodies


class InviteMemberRequest(BaseModel):
    email: str
    role: Role = ProviderRole.STAFF


class MemberStatusUpdate(BaseModel):
    status: MemberStatus


class MemberRoleUpdate(BaseModel):
    role: Role


class TeamAssignment(BaseModel):
    team_id: str | None = None


class ShiftCreate(BaseModel):
    user_id: str | None = None
    worker_profile_id: str | None = None
    role: str | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check(self) -> "ShiftCreate":
        if bool(self.user_id) == bool(self.worker_profile_id):
            raise ValueError(
                "exactly one of user_id or worker_profile_id is required"
            )
        if (
            self.scheduled_start
            and self.scheduled_end
            and self.scheduled_end <= self.scheduled_start
        ):
            raise ValueError("scheduled_end must be after scheduled_start")
        return self


class WorkerProfileCreate(BaseModel):
    name: str
    phone: str | None = None
    role: str | None = None
    tags: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)
    hourly_rate: float | None = Field(default=None, ge=0)
    availability: dict[str, Any] | None = None
    notes: str | None = None
    status: WorkerStatus = WorkerStatus.ACTIVE
    team_id: str | None = None


class WorkerProfileUpdate(BaseModel):
    name: str | None = None
    phone: str | None = None
    role: str | None = None
    tags: list[str] | None = None
    certifications: list[str] | None = None
    hourly_rate: float | None = Field(default=None, ge=0)
    availability: dict[str, Any] | None = None
    notes: str | None = None
    status: WorkerStatus | None = None


class WorkerProfileFilters(BaseModel):
    status: WorkerStatus | None = None
    role: str | None = None
    tags: list[str] | None = None
    search: str | None = None


class LocationCreate(BaseModel):
    province: str
    city: str
    barangay: str
    street_address: str | None = None
    postal_code: str | None = None
    landmark: str | None = None
    service_area_notes: str | None = None
    service_radius: int | None = Field(default=None, ge=0)
    is_primary: bool = False
    daily_capacity: int | None = Field(default=None, ge=0)
    max_concurrent_events: int | None = Field(default=None, ge=0)


class LocationUpdate(BaseModel):
    province: str | None = None
    city: str | None = None
    barangay: str | None = None
    street_address: str | None = None
    postal_code: str | None = None
    landmark: str | None = None
    service_area_notes: str | None = None
    service_radius: int | None = Field(default=None, ge=0)
    is_primary: bool | None = None
    daily_capacity: int | None = Field(default=None, ge=0)
    max_concurrent_events: int | None = Field(default=None, ge=0)
