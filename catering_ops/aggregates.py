"""
Stored procedures for the in-memory data store.

The hosted backend computes these server-side; the functions here reproduce
the same JSON shapes so the dashboard runs (and is tested) without it.
Every analytics procedure takes `p_provider_id` and optional
`p_start_date` / `p_end_date` (ISO dates, default: the last 30 days).
"""

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from catering_ops.database import InMemoryDataStore, Row, eq

EARNING_STATUSES = frozenset({"confirmed", "in_progress", "completed"})
DEFAULT_PERIOD_DAYS = 30


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(value).date() if "T" in value else date.fromisoformat(value)


def _as_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _period(params: Row) -> tuple[date, date]:
    today = date.today()
    start = _as_date(params.get("p_start_date")) or today - timedelta(
        days=DEFAULT_PERIOD_DAYS
    )
    end = _as_date(params.get("p_end_date")) or today
    return start, end


def _within(value: date | None, start: date, end: date) -> bool:
    return value is not None and start <= value <= end


def _price(booking: Row) -> float:
    return float(booking.get("total_price") or 0)


def get_user_metadata(store: InMemoryDataStore, params: Row) -> Row | None:
    user = store.table("auth_users").get(params.get("user_id"))
    if user is None:
        return None
    return {
        "id": user["id"],
        "email": user.get("email"),
        "raw_user_meta_data": user.get("raw_user_meta_data") or {},
    }


def get_revenue_metrics(store: InMemoryDataStore, params: Row) -> Row:
    start, end = _period(params)
    prev_end = start - timedelta(days=1)
    prev_start = prev_end - (end - start)

    bookings = store.rows("bookings", [eq("provider_id", params["p_provider_id"])])
    in_period = [b for b in bookings if _within(_as_date(b.get("event_date")), start, end)]
    earning = [b for b in in_period if b.get("status") in EARNING_STATUSES]
    previous = [
        b
        for b in bookings
        if _within(_as_date(b.get("event_date")), prev_start, prev_end)
        and b.get("status") in EARNING_STATUSES
    ]

    return {
        "total_revenue": round(sum(_price(b) for b in in_period), 2),
        "confirmed_revenue": round(sum(_price(b) for b in earning), 2),
        "completed_revenue": round(
            sum(_price(b) for b in in_period if b.get("status") == "completed"), 2
        ),
        "previous_period_revenue": round(sum(_price(b) for b in previous), 2),
        "average_booking_value": (
            round(sum(_price(b) for b in earning) / len(earning), 2) if earning else 0
        ),
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
    }


def get_booking_statistics(store: InMemoryDataStore, params: Row) -> Row:
    start, end = _period(params)
    today = date.today()
    bookings = [
        b
        for b in store.rows("bookings", [eq("provider_id", params["p_provider_id"])])
        if _within(_as_date(b.get("event_date")), start, end)
    ]
    by_status: dict[str, int] = defaultdict(int)
    for booking in bookings:
        by_status[booking.get("status", "pending")] += 1

    guests = [b["guest_count"] for b in bookings if b.get("guest_count") is not None]
    return {
        "total_bookings": len(bookings),
        "pending_count": by_status["pending"],
        "confirmed_count": by_status["confirmed"],
        "in_progress_count": by_status["in_progress"],
        "completed_count": by_status["completed"],
        "cancelled_count": by_status["cancelled"],
        "upcoming_bookings": sum(
            1
            for b in bookings
            if _as_date(b.get("event_date")) >= today
            and b.get("status") in {"confirmed", "in_progress"}
        ),
        "total_guests": sum(guests),
        "average_guests": round(sum(guests) / len(guests), 2) if guests else 0,
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
    }


def _hours(start: datetime | None, end: datetime | None) -> float:
    if start is None or end is None:
        return 0.0
    return (end - start).total_seconds() / 3600


def get_staff_utilization(store: InMemoryDataStore, params: Row) -> Row:
    start, end = _period(params)
    booking_ids = {
        b["id"]
        for b in store.rows("bookings", [eq("provider_id", params["p_provider_id"])])
    }
    shifts = [s for s in store.rows("shifts") if s.get("booking_id") in booking_ids]

    def scheduled_day(shift: Row) -> date | None:
        return _as_date(shift.get("scheduled_start"))

    in_period = [s for s in shifts if _within(scheduled_day(s), start, end)]
    by_status: dict[str, int] = defaultdict(int)
    for shift in in_period:
        by_status[shift.get("status", "scheduled")] += 1

    scheduled_hours = sum(
        _hours(_as_datetime(s.get("scheduled_start")), _as_datetime(s.get("scheduled_end")))
        for s in in_period
        if s.get("status") != "cancelled"
    )
    actual_hours = sum(
        _hours(_as_datetime(s.get("actual_start")), _as_datetime(s.get("actual_end")))
        for s in shifts
        if s.get("status") == "checked_out"
        and _within(_as_date(s.get("actual_start")), start, end)
    )
    staff = {s.get("user_id") or s.get("worker_profile_id") for s in in_period}
    staff.discard(None)

    return {
        "total_shifts": len(in_period),
        "scheduled_shifts": by_status["scheduled"],
        "checked_in_shifts": by_status["checked_in"],
        "completed_shifts": by_status["checked_out"],
        "cancelled_shifts": by_status["cancelled"],
        "total_scheduled_hours": round(scheduled_hours, 2),
        "total_actual_hours": round(actual_hours, 2),
        "unique_staff_count": len(staff),
        "team_member_shifts": sum(1 for s in in_period if s.get("user_id")),
        "worker_profile_shifts": sum(1 for s in in_period if s.get("worker_profile_id")),
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
    }


def get_expense_summary(store: InMemoryDataStore, params: Row) -> Row:
    start, end = _period(params)
    expenses = [
        e
        for e in store.rows("expenses", [eq("provider_id", params["p_provider_id"])])
        if _within(_as_date(e.get("expense_date")), start, end)
    ]
    totals: dict[str, list[float]] = defaultdict(list)
    for expense in expenses:
        totals[expense["category"]].append(float(expense["amount"]))

    total = sum(float(e["amount"]) for e in expenses)
    return {
        "total_expenses": round(total, 2),
        "expense_count": len(expenses),
        "average_expense": round(total / len(expenses), 2) if expenses else 0,
        "by_category": sorted(
            (
                {"category": category, "total": round(sum(amounts), 2), "count": len(amounts)}
                for category, amounts in totals.items()
            ),
            key=lambda c: c["total"],
            reverse=True,
        ),
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
    }


def _month_start(day: date, months_back: int) -> date:
    index = day.year * 12 + (day.month - 1) - months_back
    return date(index // 12, index % 12 + 1, 1)


def get_monthly_trend_data(store: InMemoryDataStore, params: Row) -> list[Row]:
    months = int(params.get("p_months") or 6)
    today = date.today()
    provider_id = params["p_provider_id"]
    bookings = [
        b
        for b in store.rows("bookings", [eq("provider_id", provider_id)])
        if b.get("status") in EARNING_STATUSES and b.get("event_date")
    ]
    expenses = store.rows("expenses", [eq("provider_id", provider_id)])

    trend = []
    # the current month plus the `months` before it
    for back in range(months, -1, -1):
        month = _month_start(today, back)

        def same_month(value: Any) -> bool:
            day = _as_date(value)
            return day is not None and (day.year, day.month) == (month.year, month.month)

        month_bookings = [b for b in bookings if same_month(b["event_date"])]
        revenue = round(sum(_price(b) for b in month_bookings), 2)
        spent = round(
            sum(float(e["amount"]) for e in expenses if same_month(e.get("expense_date"))),
            2,
        )
        trend.append(
            {
                "month": month.strftime("%B"),
                "month_short": month.strftime("%b"),
                "year": month.year,
                "bookings": len(month_bookings),
                "revenue": revenue,
                "expenses": spent,
                "net": round(revenue - spent, 2),
            }
        )
    return trend


def register_default_procedures(store: InMemoryDataStore) -> None:
    store.register_rpc("get_user_metadata", get_user_metadata)
    store.register_rpc("get_revenue_metrics", get_revenue_metrics)
    store.register_rpc("get_booking_statistics", get_booking_statistics)
    store.register_rpc("get_staff_utilization", get_staff_utilization)
    store.register_rpc("get_expense_summary", get_expense_summary)
    store.register_rpc("get_monthly_trend_data", get_monthly_trend_data)
