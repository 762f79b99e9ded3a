from __future__ import annotations

from luxbook.core.config import get_settings
from luxbook.core.logging import configure_logging, get_logger
from luxbook.db.base import Base
from luxbook.db.session import engine

# Import models to register with SQLAlchemy
import luxbook.models  # noqa: F401

logger = get_logger(__name__)


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    Base.metadata.create_all(bind=engine)

    logger.info("db.initialized", tables=sorted(Base.metadata.tables))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
