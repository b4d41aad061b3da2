from conduit.budget.ledger import UsageLedger
from conduit.budget.models import UsageEvent
from conduit.observability.logger import get_logger

log = get_logger("budget.recorder")


class UsageRecorder:
    """Appends finished requests to the ledger and logs them.

    Budgets are enforced before a request is sent; by the time an event gets
    here the money is spent, so it is only counted toward the next check.
    """

    def __init__(self, ledger: UsageLedger):
        self.ledger = ledger

    def record(self, event: UsageEvent):
        self.ledger.append(event)
        log.info(
            "usage_recorded",
            provider=event.provider_id,
            model=event.model_id,
            tokens=event.total_tokens,
            cost=event.estimated_cost_usd,
            success=event.success,
        )
