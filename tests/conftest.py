import pytest

from catering_ops.aggregates import register_default_procedures
from catering_ops.cache import QueryCache
from catering_ops.config import Settings
from catering_ops.context import ProviderContext
from catering_ops.database import InMemoryDataStore
from catering_ops.notifier import Notifier
from catering_ops.optimistic import MutationController
from catering_ops.roles import ProviderRole


@pytest.fixture
def store() -> InMemoryDataStore:
    store = InMemoryDataStore()
    register_default_procedures(store)
    return store


@pytest.fixture
def cache() -> QueryCache:
    return QueryCache()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def mutations(cache: QueryCache, notifier: Notifier) -> MutationController:
    return MutationController(cache, notifier)


@pytest.fixture
def seeded(store: InMemoryDataStore) -> InMemoryDataStore:
    """
    One provider ("prov-1") with an owner, an admin, a supervisor, a staff
    member and a viewer, two worker profiles, a team and two bookings.
    """
    store.seed(
        "auth_users",
        [
            {
                "id": "user-owner",
                "email": "olivia@harborcatering.ph",
                "raw_user_meta_data": {"full_name": "Olivia Santos"},
            },
            {
                "id": "user-admin",
                "email": "arnel@harborcatering.ph",
                "raw_user_meta_data": {
                    "full_name": "Arnel Cruz",
                    "avatar_url": "https://cdn.example/arnel.png",
                },
            },
            {"id": "user-super", "email": "mika@harborcatering.ph"},
            {"id": "user-staff", "email": "jun@harborcatering.ph"},
            {"id": "user-viewer", "email": "lea@harborcatering.ph"},
        ],
    )
    store.seed(
        "provider_members",
        [
            {
                "id": "m-owner",
                "provider_id": "prov-1",
                "user_id": "user-owner",
                "role": "owner",
                "status": "active",
                "created_at": "2025-01-01T00:00:00+00:00",
            },
            {
                "id": "m-admin",
                "provider_id": "prov-1",
                "user_id": "user-admin",
                "role": "admin",
                "status": "active",
                "created_at": "2025-01-02T00:00:00+00:00",
            },
            {
                "id": "m-super",
                "provider_id": "prov-1",
                "user_id": "user-super",
                # written before the supervisor role existed
                "role": "manager",
                "status": "active",
                "team_id": "team-a",
                "created_at": "2025-01-03T00:00:00+00:00",
            },
            {
                "id": "m-staff",
                "provider_id": "prov-1",
                "user_id": "user-staff",
                "role": "staff",
                "status": "active",
                "team_id": "team-a",
                "created_at": "2025-01-04T00:00:00+00:00",
            },
            {
                "id": "m-viewer",
                "provider_id": "prov-1",
                "user_id": "user-viewer",
                "role": "viewer",
                "status": "active",
                "created_at": "2025-01-05T00:00:00+00:00",
            },
        ],
    )
    store.seed(
        "worker_profiles",
        [
            {
                "id": "w-bob",
                "provider_id": "prov-1",
                "name": "Bob Reyes",
                "phone": "+639170000001",
                "role": "Server",
                "tags": ["bilingual", "weekend"],
                "hourly_rate": 95.0,
                "status": "active",
            },
            {
                "id": "w-carla",
                "provider_id": "prov-1",
                "name": "Carla Lim",
                "phone": "+639170000002",
                "role": "Cook",
                "tags": ["weekend"],
                "status": "inactive",
            },
        ],
    )
    store.seed(
        "teams",
        [{"id": "team-a", "provider_id": "prov-1", "name": "Team A"}],
    )
    store.seed(
        "bookings",
        [
            {
                "id": "bk-1",
                "provider_id": "prov-1",
                "customer_name": "Dela Cruz Wedding",
                "event_date": "2025-07-12",
                "status": "confirmed",
                "guest_count": 120,
                "total_price": 85000.0,
            },
            {
                "id": "bk-2",
                "provider_id": "prov-1",
                "customer_name": "Tan Corporate Lunch",
                "event_date": "2025-07-20",
                "status": "pending",
                "guest_count": 40,
                "total_price": 22000.0,
            },
        ],
    )
    return store


@pytest.fixture
def make_service(store, cache, mutations):
    """Build a service acting as `user_id` with `role` in prov-1."""

    def _make(
        cls,
        *,
        role: ProviderRole | None = ProviderRole.OWNER,
        user_id: str | None = "user-owner",
        provider_id: str | None = "prov-1",
        settings: Settings | None = None,
    ):
        context = ProviderContext(provider_id, user_id, role)
        return cls(store, cache, mutations, context, settings or Settings())

    return _make
