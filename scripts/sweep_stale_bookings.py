import logging

from src.infrastructure.config import Settings
from src.infrastructure.container import ServiceContainer


def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    container = ServiceContainer.build(settings)
    try:
        report = container.sweeper.sweep()
    finally:
        container.engine.dispose()
    print(
        f"Sweep complete: {len(report.expired_pending)} pending expired, "
        f"{len(report.expired_processing)} processing expired, "
        f"{len(report.reconciled)} reconciled, {len(report.skipped)} skipped."
    )


if __name__ == "__main__":
    main()
