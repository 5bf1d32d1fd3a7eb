import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Annotated, TypeVar

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse

from catering_ops.aggregates import register_default_procedures
from catering_ops.analytics import AnalyticsService
from catering_ops.bookings import BookingService
from catering_ops.cache import QueryCache
from catering_ops.config import Settings, configure_logging, load_settings
from catering_ops.context import ProviderContext, ProviderService, load_context
from catering_ops.database import DataStore, InMemoryDataStore
from catering_ops.errors import DashboardError
from catering_ops.locations import LocationService
from catering_ops.models import (
    Booking,
    BookingStatus,
    DashboardAnalytics,
    ExpenseItem,
    Invitation,
    InviteMemberRequest,
    LocationCreate,
    LocationUpdate,
    MemberRoleUpdate,
    MemberStatusUpdate,
    Notification,
    ProviderMember,
    ServiceLocation,
    Shift,
    ShiftCreate,
    ShiftWithAssignee,
    TeamAssignment,
    TeamMemberWithUser,
    WorkerProfile,
    WorkerProfileCreate,
    WorkerProfileFilters,
    WorkerProfileUpdate,
    WorkerStatus,
)
from catering_ops.notifier import Notifier
from catering_ops.optimistic import MutationController
from catering_ops.rest import RestDataStore
from catering_ops.shifts import ShiftService
from catering_ops.team import TeamService
from catering_ops.workers import WorkerService

logger = logging.getLogger(__name__)

router = APIRouter()
providers = APIRouter(prefix="/api/providers/{provider_id}")

UserId = Annotated[str | None, Header(alias="X-User-Id")]

S = TypeVar("S", bound=ProviderService)


async def _service(
    cls: type[S], request: Request, provider_id: str, user_id: str | None
) -> S:
    state = request.app.state
    context: ProviderContext = await load_context(state.store, provider_id, user_id)
    return cls(state.store, state.cache, state.mutations, context, state.settings)


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/api/notifications")
async def list_notifications(
    request: Request, limit: int | None = None
) -> list[Notification]:
    return request.app.state.notifier.recent(limit)


# Shifts


@providers.get("/shifts/upcoming")
async def upcoming_shifts(
    provider_id: str, request: Request, user_id: UserId = None, limit: int | None = None
) -> list[ShiftWithAssignee]:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.upcoming(limit)


@providers.get("/bookings/{booking_id}/shifts")
async def booking_shifts(
    provider_id: str, booking_id: str, request: Request, user_id: UserId = None
) -> list[ShiftWithAssignee]:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.list_for_booking(booking_id)


@providers.post("/bookings/{booking_id}/shifts", status_code=201)
async def create_shift(
    provider_id: str,
    booking_id: str,
    body: ShiftCreate,
    request: Request,
    user_id: UserId = None,
) -> Shift:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.create_shift(booking_id, body)


@providers.post("/shifts/{shift_id}/check-in")
async def check_in(
    provider_id: str, shift_id: str, request: Request, user_id: UserId = None
) -> Shift:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.check_in(shift_id)


@providers.post("/shifts/{shift_id}/check-out")
async def check_out(
    provider_id: str, shift_id: str, request: Request, user_id: UserId = None
) -> Shift:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.check_out(shift_id)


@providers.post("/shifts/{shift_id}/cancel")
async def cancel_shift(
    provider_id: str, shift_id: str, request: Request, user_id: UserId = None
) -> Shift:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    return await shifts.cancel_shift(shift_id)


@providers.delete("/shifts/{shift_id}")
async def delete_shift(
    provider_id: str, shift_id: str, request: Request, user_id: UserId = None
) -> dict[str, bool]:
    shifts = await _service(ShiftService, request, provider_id, user_id)
    await shifts.delete_shift(shift_id)
    return {"success": True}


# Team members and invitations


@providers.get("/members")
async def list_members(
    provider_id: str, request: Request, user_id: UserId = None
) -> list[TeamMemberWithUser]:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.members()


@providers.patch("/members/{member_id}/status")
async def update_member_status(
    provider_id: str,
    member_id: str,
    body: MemberStatusUpdate,
    request: Request,
    user_id: UserId = None,
) -> ProviderMember:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.update_member_status(member_id, body.status)


@providers.patch("/members/{member_id}/role")
async def update_member_role(
    provider_id: str,
    member_id: str,
    body: MemberRoleUpdate,
    request: Request,
    user_id: UserId = None,
) -> ProviderMember:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.update_member_role(member_id, body.role)


@providers.patch("/members/{member_id}/team")
async def assign_member_team(
    provider_id: str,
    member_id: str,
    body: TeamAssignment,
    request: Request,
    user_id: UserId = None,
) -> ProviderMember:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.assign_member_team(member_id, body.team_id)


@providers.delete("/members/{member_id}")
async def remove_member(
    provider_id: str, member_id: str, request: Request, user_id: UserId = None
) -> dict[str, bool]:
    team = await _service(TeamService, request, provider_id, user_id)
    await team.remove_member(member_id)
    return {"success": True}


@providers.get("/invitations")
async def list_invitations(
    provider_id: str, request: Request, user_id: UserId = None
) -> list[Invitation]:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.invitations()


@providers.post("/invitations", status_code=201)
async def invite_member(
    provider_id: str,
    body: InviteMemberRequest,
    request: Request,
    user_id: UserId = None,
) -> Invitation:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.invite_member(body.email, body.role)


@providers.post("/invitations/{invitation_id}/resend")
async def resend_invitation(
    provider_id: str, invitation_id: str, request: Request, user_id: UserId = None
) -> Invitation:
    team = await _service(TeamService, request, provider_id, user_id)
    return await team.resend_invitation(invitation_id)


# Worker profiles


@providers.get("/workers")
async def list_workers(
    provider_id: str,
    request: Request,
    user_id: UserId = None,
    status: WorkerStatus | None = None,
    role: str | None = None,
    tags: Annotated[list[str] | None, Query()] = None,
    search: str | None = None,
) -> list[WorkerProfile]:
    workers = await _service(WorkerService, request, provider_id, user_id)
    filters = WorkerProfileFilters(status=status, role=role, tags=tags, search=search)
    return await workers.list_workers(filters)


@providers.get("/workers/roles")
async def worker_roles(
    provider_id: str, request: Request, user_id: UserId = None
) -> list[str]:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.roles()


@providers.get("/workers/tags")
async def worker_tags(
    provider_id: str, request: Request, user_id: UserId = None
) -> list[str]:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.tags()


@providers.get("/workers/{worker_id}")
async def get_worker(
    provider_id: str, worker_id: str, request: Request, user_id: UserId = None
) -> WorkerProfile:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.get(worker_id)


@providers.post("/workers", status_code=201)
async def create_worker(
    provider_id: str,
    body: WorkerProfileCreate,
    request: Request,
    user_id: UserId = None,
) -> WorkerProfile:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.create_worker(body)


@providers.patch("/workers/{worker_id}")
async def update_worker(
    provider_id: str,
    worker_id: str,
    body: WorkerProfileUpdate,
    request: Request,
    user_id: UserId = None,
) -> WorkerProfile:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.update_worker(worker_id, body)


@providers.patch("/workers/{worker_id}/team")
async def assign_worker_team(
    provider_id: str,
    worker_id: str,
    body: TeamAssignment,
    request: Request,
    user_id: UserId = None,
) -> WorkerProfile:
    workers = await _service(WorkerService, request, provider_id, user_id)
    return await workers.assign_worker_team(worker_id, body.team_id)


@providers.delete("/workers/{worker_id}")
async def delete_worker(
    provider_id: str, worker_id: str, request: Request, user_id: UserId = None
) -> dict[str, bool]:
    workers = await _service(WorkerService, request, provider_id, user_id)
    await workers.delete_worker(worker_id)
    return {"success": True}


# Service locations


@providers.get("/locations")
async def list_locations(
    provider_id: str, request: Request, user_id: UserId = None
) -> list[ServiceLocation]:
    locations = await _service(LocationService, request, provider_id, user_id)
    return await locations.list_locations()


@providers.post("/locations", status_code=201)
async def create_location(
    provider_id: str, body: LocationCreate, request: Request, user_id: UserId = None
) -> ServiceLocation:
    locations = await _service(LocationService, request, provider_id, user_id)
    return await locations.create_location(body)


@providers.patch("/locations/{location_id}")
async def update_location(
    provider_id: str,
    location_id: str,
    body: LocationUpdate,
    request: Request,
    user_id: UserId = None,
) -> ServiceLocation:
    locations = await _service(LocationService, request, provider_id, user_id)
    return await locations.update_location(location_id, body)


@providers.post("/locations/{location_id}/primary")
async def set_primary_location(
    provider_id: str, location_id: str, request: Request, user_id: UserId = None
) -> ServiceLocation:
    locations = await _service(LocationService, request, provider_id, user_id)
    return await locations.set_primary_location(location_id)


@providers.delete("/locations/{location_id}")
async def delete_location(
    provider_id: str, location_id: str, request: Request, user_id: UserId = None
) -> dict[str, bool]:
    locations = await _service(LocationService, request, provider_id, user_id)
    await locations.delete_location(location_id)
    return {"success": True}


# Bookings


@providers.get("/bookings")
async def list_bookings(
    provider_id: str,
    request: Request,
    user_id: UserId = None,
    status: BookingStatus | None = None,
) -> list[Booking]:
    bookings = await _service(BookingService, request, provider_id, user_id)
    return await bookings.list_bookings(status)


@providers.get("/bookings/{booking_id}")
async def get_booking(
    provider_id: str, booking_id: str, request: Request, user_id: UserId = None
) -> Booking:
    bookings = await _service(BookingService, request, provider_id, user_id)
    return await bookings.get(booking_id)


@providers.patch("/bookings/{booking_id}/team")
async def assign_booking_team(
    provider_id: str,
    booking_id: str,
    body: TeamAssignment,
    request: Request,
    user_id: UserId = None,
) -> Booking:
    bookings = await _service(BookingService, request, provider_id, user_id)
    return await bookings.assign_team(booking_id, body.team_id)


# Analytics


@providers.get("/analytics")
async def dashboard_analytics(
    provider_id: str,
    request: Request,
    user_id: UserId = None,
    start_date: date | None = None,
    end_date: date | None = None,
    trend_months: int = Query(default=6, ge=1, le=24),
) -> DashboardAnalytics:
    analytics = await _service(AnalyticsService, request, provider_id, user_id)
    return await analytics.dashboard(start_date, end_date, trend_months)


@providers.get("/expenses/recent")
async def recent_expenses(
    provider_id: str,
    request: Request,
    user_id: UserId = None,
    limit: int = Query(default=5, ge=1, le=50),
) -> list[ExpenseItem]:
    analytics = await _service(AnalyticsService, request, provider_id, user_id)
    return await analytics.recent_expenses(limit)


async def handle_dashboard_error(request: Request, exc: DashboardError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"message": exc.message, "code": exc.code}},
    )


def build_store(settings: Settings) -> DataStore:
    if settings.data_backend == "rest":
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the rest backend")
        return RestDataStore(
            settings.supabase_url,
            settings.supabase_key,
            timeout=settings.http_timeout_seconds,
        )

    store = InMemoryDataStore()
    register_default_procedures(store)
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    for task in list(app.state.cache.background_tasks):
        task.cancel()
    if isinstance(app.state.store, RestDataStore):
        await app.state.store.aclose()


def create_app(
    settings: Settings | None = None, store: DataStore | None = None
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store if store is not None else build_store(settings)
    app.state.cache = QueryCache(stale_time=settings.query_stale_seconds)
    app.state.notifier = Notifier(history=settings.notification_history)
    app.state.mutations = MutationController(app.state.cache, app.state.notifier)

    app.add_exception_handler(DashboardError, handle_dashboard_error)
    app.include_router(router)
    app.include_router(providers)
    logger.info(f"Dashboard API ready ({settings.data_backend} backend)")
    return app
