import asyncio
import logging
from datetime import date
from typing import Any, TypeVar

from pydantic import BaseModel

from catering_ops.context import ProviderService
from catering_ops.database import Order, eq
from catering_ops.errors import DataStoreError
from catering_ops.models import (
    BookingStatistics,
    DashboardAnalytics,
    Expense,
    ExpenseItem,
    ExpenseSummary,
    MonthlyTrendPoint,
    RevenueMetrics,
    StaffUtilization,
)

logger = logging.getLogger(__name__)

DEFAULT_TREND_MONTHS = 6

M = TypeVar("M", bound=BaseModel)


def analytics_key(
    provider_id: str, start: date | None, end: date | None, trend_months: int
) -> tuple[Any, ...]:
    return (
        "dashboard-analytics",
        provider_id,
        start.isoformat() if start else None,
        end.isoformat() if end else None,
        trend_months,
    )


def recent_expenses_key(provider_id: str, limit: int) -> tuple[Any, ...]:
    return ("recent-expenses", provider_id, limit)


def format_category(category: str) -> str:
    """"food_supplies" -> "Food Supplies"."""
    return " ".join(word[:1].upper() + word[1:] for word in category.split("_"))


def _single(result: Any) -> Any:
    # set-returning procedures come back as a one-row list
    if isinstance(result, list):
        return result[0] if result else {}
    return result


class AnalyticsService(ProviderService):
    async def _period_rpc(
        self, name: str, model: type[M], start: date | None, end: date | None
    ) -> M:
        result = await self.store.rpc(
            name,
            {
                "p_provider_id": self.provider_id,
                "p_start_date": start.isoformat() if start else None,
                "p_end_date": end.isoformat() if end else None,
            },
        )
        return model.model_validate(_single(result) or {})

    async def _trends(self, months: int) -> list[MonthlyTrendPoint]:
        result = await self.store.rpc(
            "get_monthly_trend_data",
            {"p_provider_id": self.provider_id, "p_months": months},
        )
        return [MonthlyTrendPoint.model_validate(row) for row in result or []]

    async def _load_dashboard(
        self, start: date | None, end: date | None, trend_months: int
    ) -> DashboardAnalytics:
        labels = ("Revenue", "Bookings", "Staff", "Expenses", "Trends")
        results = await asyncio.gather(
            self._period_rpc("get_revenue_metrics", RevenueMetrics, start, end),
            self._period_rpc("get_booking_statistics", BookingStatistics, start, end),
            self._period_rpc("get_staff_utilization", StaffUtilization, start, end),
            self._period_rpc("get_expense_summary", ExpenseSummary, start, end),
            self._trends(trend_months),
            return_exceptions=True,
        )

        for label, result in zip(labels, results, strict=True):
            if isinstance(result, DataStoreError):
                logger.error(f"❌ {label} analytics failed: {result}")
                raise DataStoreError(f"{label}: {result.message}", code=result.code)
            if isinstance(result, BaseException):
                raise result

        revenue, bookings, staff, expenses, trends = results
        return DashboardAnalytics(
            revenue=revenue,
            bookings=bookings,
            staff=staff,
            expenses=expenses,
            trends=trends,
        )

    async def dashboard(
        self,
        start_date: date | None = None,
        end_date: date | None = None,
        trend_months: int = DEFAULT_TREND_MONTHS,
    ) -> DashboardAnalytics:
        """
        Revenue, booking, staffing and expense figures for the period plus
        the monthly trend. The five procedures run concurrently; if any of
        them fails the whole call fails with that procedure's label.

        Without dates the procedures default to the last 30 days.
        """
        self.require(
            "can_view_analytics", "Only owners and admins can view analytics"
        )
        provider_id = self.provider_id
        return await self.query(
            analytics_key(provider_id, start_date, end_date, trend_months),
            lambda: self._load_dashboard(start_date, end_date, trend_months),
            stale_time=self.settings.analytics_stale_seconds,
        )

    async def recent_expenses(self, limit: int = 5) -> list[ExpenseItem]:
        provider_id = self.provider_id

        async def fetch() -> list[ExpenseItem]:
            rows = await self.store.select(
                "expenses",
                filters=[eq("provider_id", provider_id)],
                order=Order("expense_date", ascending=False),
                limit=limit,
            )
            expenses = [Expense.model_validate(row) for row in rows]
            return [
                ExpenseItem(
                    id=e.id,
                    category=format_category(e.category),
                    amount=e.amount,
                    expense_date=e.expense_date,
                )
                for e in expenses
            ]

        return await self.query(
            recent_expenses_key(provider_id, limit),
            fetch,
            stale_time=self.settings.analytics_stale_seconds,
        )
