from typing import Optional

from sqlalchemy.engine import Engine

from .models import Base
from .session import engine

from app.utils.logging import get_logger

logger = get_logger()


def create_tables(bind: Optional[Engine] = None):
    """Create the settings and dispatch log tables if they do not exist yet."""
    target = bind if bind is not None else engine
    Base.metadata.create_all(target, checkfirst=True)
    logger.info(
        f"Ensured tables on {target.url.render_as_string(hide_password=True)}: "
        f"{', '.join(sorted(Base.metadata.tables))}"
    )


def drop_tables(bind: Optional[Engine] = None):
    target = bind if bind is not None else engine
    Base.metadata.drop_all(target)
    logger.warning(
        f"Dropped notification tables on {target.url.render_as_string(hide_password=True)}"
    )


def reset_db(bind: Optional[Engine] = None):
    """Drop and recreate every table. Wipes the dispatch log, so local use only."""
    logger.info("Resetting database...")
    drop_tables(bind)
    create_tables(bind)
    logger.info("Database reset complete.")


if __name__ == "__main__":
    reset_db()
