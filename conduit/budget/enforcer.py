from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import select

from conduit.budget.ledger import UsageLedger
from conduit.budget.models import Budget, BudgetAlert, BudgetPeriod
from conduit.models import ProviderBudgetRecord
from conduit.observability.logger import get_logger

log = get_logger("budget")

AlertListener = Callable[[BudgetAlert], None]


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


class BudgetEnforcer:
    """Per-provider daily/monthly spending caps checked against the usage ledger.

    Advisory by default: an exceeded cap raises an alert but the call is still
    allowed unless the budget sets ``block_on_exceed``. Periods are UTC.
    """

    def __init__(self, ledger: UsageLedger, session_factory=None):
        self.ledger = ledger
        self.session_factory = session_factory
        self._budgets: dict[str, Budget] = {}
        self._listeners: list[AlertListener] = []
        self.last_alert: Optional[BudgetAlert] = None

    async def load(self):
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            result = await session.execute(select(ProviderBudgetRecord))
            records = result.scalars().all()
        self._budgets = {
            r.provider_id: Budget(
                daily_usd=r.daily_usd,
                monthly_usd=r.monthly_usd,
                block_on_exceed=bool(r.block_on_exceed),
            )
            for r in records
        }
        log.info("budgets_loaded", count=len(self._budgets))

    async def set_budget(self, provider_id: str, budget: Budget):
        self._budgets[provider_id] = budget
        log.info("budget_set", provider=provider_id, daily=budget.daily_usd,
                 monthly=budget.monthly_usd, block=budget.block_on_exceed)
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            record = await session.get(ProviderBudgetRecord, provider_id)
            if record is None:
                record = ProviderBudgetRecord(provider_id=provider_id)
                session.add(record)
            record.daily_usd = budget.daily_usd
            record.monthly_usd = budget.monthly_usd
            record.block_on_exceed = budget.block_on_exceed
            await session.commit()

    async def remove_budget(self, provider_id: str):
        self._budgets.pop(provider_id, None)
        if self.session_factory is None:
            return
        async with self.session_factory() as session:
            record = await session.get(ProviderBudgetRecord, provider_id)
            if record is not None:
                await session.delete(record)
                await session.commit()

    def get_budget(self, provider_id: str) -> Optional[Budget]:
        return self._budgets.get(provider_id)

    def budgets(self) -> dict[str, Budget]:
        return dict(self._budgets)

    def subscribe(self, listener: AlertListener):
        self._listeners.append(listener)

    def check_and_record(self, delta_usd: float, provider_id: str, now: Optional[datetime] = None) -> bool:
        """Whether a call costing ``delta_usd`` on top of recorded usage is allowed."""
        budget = self._budgets.get(provider_id)
        if budget is None or delta_usd <= 0:
            return True

        now = now or datetime.now(timezone.utc)
        day_cost = self.ledger.provider_cost(provider_id, (start_of_day(now), now)) + delta_usd
        month_cost = self.ledger.provider_cost(provider_id, (start_of_month(now), now)) + delta_usd

        if budget.daily_usd is not None and day_cost > budget.daily_usd:
            self._alert(provider_id, BudgetPeriod.DAILY, budget.daily_usd, day_cost, budget.block_on_exceed, now)
            return not budget.block_on_exceed
        if budget.monthly_usd is not None and month_cost > budget.monthly_usd:
            self._alert(provider_id, BudgetPeriod.MONTHLY, budget.monthly_usd, month_cost, budget.block_on_exceed, now)
            return not budget.block_on_exceed
        return True

    def _alert(self, provider_id: str, period: BudgetPeriod, limit: float, projected: float, blocked: bool, now: datetime):
        alert = BudgetAlert(
            provider_id=provider_id,
            period=period,
            limit_usd=limit,
            projected_usd=round(projected, 6),
            blocked=blocked,
            timestamp=now,
            message=f"{period.value.capitalize()} budget exceeded for {provider_id}.",
        )
        self.last_alert = alert
        log.warning("budget_exceeded", provider=provider_id, period=period.value,
                    limit=limit, projected=round(projected, 6), blocked=blocked)
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception as e:
                log.warning("budget_listener_failed", error=str(e))
