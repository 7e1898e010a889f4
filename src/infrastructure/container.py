from dataclasses import dataclass
from typing import Mapping

from sqlalchemy.engine import Engine

from src.application.expiry_sweeper import ExpirySweeper
from src.application.payment_initiation import PaymentInitiationService
from src.application.reconciliation import ReconciliationEngine
from src.application.seat_allocation import SeatAllocationService
from src.domain.payments import PaymentGateway, PaymentProvider
from src.infrastructure.config import Settings
from src.infrastructure.db.session import Transactor, build_engine, build_session_factory
from src.infrastructure.payments.gateways import build_gateways
from src.infrastructure.rate_limit import RateLimiter


@dataclass
class ServiceContainer:
    """Everything the HTTP layer and scripts need, wired once per process."""

    settings: Settings
    engine: Engine
    transactor: Transactor
    gateways: Mapping[PaymentProvider, PaymentGateway]
    seats: SeatAllocationService
    payments: PaymentInitiationService
    reconciler: ReconciliationEngine
    sweeper: ExpirySweeper
    rate_limiter: RateLimiter

    @classmethod
    def build(
        cls,
        settings: Settings,
        gateways: Mapping[PaymentProvider, PaymentGateway] | None = None,
    ) -> "ServiceContainer":
        engine = build_engine(settings.database_url)
        transactor = Transactor(
            build_session_factory(engine),
            max_attempts=settings.tx_max_attempts,
            backoff_base_seconds=settings.tx_backoff_base_seconds,
        )
        gateways = gateways if gateways is not None else build_gateways(settings)
        reconciler = ReconciliationEngine(transactor)
        return cls(
            settings=settings,
            engine=engine,
            transactor=transactor,
            gateways=gateways,
            seats=SeatAllocationService(
                transactor,
                seat_hold_minutes=settings.seat_hold_minutes,
                default_currency=settings.default_currency,
            ),
            payments=PaymentInitiationService(transactor, gateways),
            reconciler=reconciler,
            sweeper=ExpirySweeper(
                transactor,
                reconciler,
                gateways,
                stale_pending_minutes=settings.stale_pending_minutes,
                stale_processing_minutes=settings.stale_processing_minutes,
            ),
            rate_limiter=RateLimiter(
                points=settings.rate_limit_points,
                window_seconds=settings.rate_limit_window_seconds,
            ),
        )
