"""
Composition root.

Builds every service from one configuration and one database path. Nothing
in the package holds module-level state; callers keep the ``Services`` value.
"""

from dataclasses import dataclass
from typing import Any, Optional

from ..billing.stripe_sync import StripeWebhookHandler
from ..config.loader import AppConfig
from ..providers.resilient import ResilientProvider
from ..resilience.circuit_breaker import CircuitBreaker
from ..resilience.retry import RetryConfig
from ..storage.db import DEFAULT_DB_PATH
from ..storage.repository import BillingRepository, WorkspaceRepository, initialize_schema
from .credit_calculator import CreditCalculator
from .generation import GenerationService
from .ledger import CreditLedger
from .proration import ProrationService
from .trials import TrialService


@dataclass(frozen=True)
class Services:
    config: AppConfig
    workspaces: WorkspaceRepository
    billing: BillingRepository
    ledger: CreditLedger
    calculator: CreditCalculator
    breaker: CircuitBreaker
    retry_config: RetryConfig
    generation: GenerationService
    trials: TrialService
    proration: ProrationService
    webhooks: StripeWebhookHandler

    def resilient(self, provider: Any) -> ResilientProvider:
        """Wrap a provider with the shared circuit breaker and retry settings."""
        return ResilientProvider(provider, self.breaker, self.retry_config)


def build_services(
    config: Optional[AppConfig] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> Services:
    """Create the schema if needed and wire all services together."""
    config = config or AppConfig()
    initialize_schema(db_path)

    workspaces = WorkspaceRepository(db_path)
    billing = BillingRepository(db_path)
    ledger = CreditLedger(db_path)
    calculator = CreditCalculator(config.credits)

    return Services(
        config=config,
        workspaces=workspaces,
        billing=billing,
        ledger=ledger,
        calculator=calculator,
        breaker=CircuitBreaker(config.circuit_breaker),
        retry_config=config.retry,
        generation=GenerationService(
            ledger,
            calculator,
            db_path=db_path,
            bill_partial_streams=config.streaming.bill_partial_content,
            stream_timeout_ms=config.streaming.timeout_ms,
            max_buffer_size=config.streaming.max_buffer_size,
        ),
        trials=TrialService(workspaces, billing),
        proration=ProrationService(billing),
        webhooks=StripeWebhookHandler(billing, workspaces, ledger),
    )
