from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.engine import Engine
from tap_payments.core.config import Settings, settings

def build_engine(config: Settings = settings) -> Engine:
    # check_same_thread is needed for SQLite, remove for PostgreSQL
    if config.DATABASE_URL.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": config.DB_TIMEOUT_SECONDS}
    else:
        connect_args = {"connect_timeout": int(config.DB_TIMEOUT_SECONDS)}
    return create_engine(
        config.DATABASE_URL,
        connect_args=connect_args,
        pool_pre_ping=True,
    )

engine = build_engine()

def get_session():
    with Session(engine) as session:
        yield session

def create_db_and_tables(bind: Engine = engine):
    # Models must be imported so they register with SQLModel metadata
    import tap_payments.models  # noqa: F401
    SQLModel.metadata.create_all(bind)
