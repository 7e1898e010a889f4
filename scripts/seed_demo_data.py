from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.domain.payments import normalize_currency
from src.infrastructure.config import Settings
from src.infrastructure.db.models import Base, Schedule
from src.infrastructure.db.session import Transactor, build_engine, build_session_factory
from src.infrastructure.repositories.seat_repository import SeatRepository


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    cat = timezone(timedelta(hours=2))
    now_cat = datetime.now(cat)
    target = now_cat + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _layout(rows: int, seats_per_row: str = "ABCD") -> list[str]:
    return [f"{row}{seat}" for row in range(1, rows + 1) for seat in seats_per_row]


def seed_schedules(db, currency: str) -> int:
    schedule_defs = [
        {
            "company_id": "axa-coach",
            "route_id": "blantyre-lilongwe",
            "bus_id": "AXA-EXEC-01",
            "departure_at": _dt(days_from_now=1, hour=7, minute=0),
            "arrival_at": _dt(days_from_now=1, hour=11, minute=30),
            "price": 25000,
            "seat_layout": _layout(rows=12),
        },
        {
            "company_id": "axa-coach",
            "route_id": "lilongwe-mzuzu",
            "bus_id": "AXA-EXEC-02",
            "departure_at": _dt(days_from_now=2, hour=8, minute=30),
            "arrival_at": _dt(days_from_now=2, hour=13, minute=0),
            "price": 22000,
            "seat_layout": _layout(rows=10),
        },
        {
            "company_id": "sososo",
            "route_id": "zomba-blantyre",
            "bus_id": "SSS-MINI-07",
            "departure_at": _dt(days_from_now=1, hour=15, minute=15),
            "arrival_at": _dt(days_from_now=1, hour=16, minute=45),
            "price": 6000,
            "seat_layout": _layout(rows=4, seats_per_row="ABC"),
        },
    ]

    repo = SeatRepository(db)
    created = 0
    for item in schedule_defs:
        existing = db.execute(
            select(Schedule)
            .where(Schedule.bus_id == item["bus_id"])
            .where(Schedule.departure_at == item["departure_at"])
        ).scalar_one_or_none()
        if existing:
            continue
        repo.create_schedule(currency=currency, **item)
        created += 1
    return created


def main() -> None:
    settings = Settings.from_env()
    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    transactor = Transactor(build_session_factory(engine))
    currency = normalize_currency(settings.default_currency)
    created = transactor.run(
        lambda db: seed_schedules(db, currency),
        operation="seed_schedules",
    )
    print(f"Seed complete: {created} bus schedules added.")
    engine.dispose()


if __name__ == "__main__":
    main()
