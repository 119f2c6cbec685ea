from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session
from app.config.settings import settings

_url = make_url(str(settings.DATABASE_URL))

engine = create_engine(
    _url,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=(
        {"check_same_thread": False} if _url.get_backend_name() == "sqlite" else {}
    ),
    echo=False,
)

SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def get_sync_session():
    """Dependency to get sync database session"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
