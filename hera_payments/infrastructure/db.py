from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from hera_payments.core_settings import get_settings
from hera_payments.domain.models import Base

settings = get_settings()
DATABASE_URL = settings.database_url
engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_engine():
    return engine

def init_models():
    Base.metadata.create_all(engine)
