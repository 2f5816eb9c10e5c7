from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from toon_engine.core.settings import settings

SQLALCHEMY_DATABASE_URL = settings.database_url

connect_args: dict = {}
if SQLALCHEMY_DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    # Import the models so every table is registered on Base.metadata.
    from toon_engine.models import account, conversion_job, credit_transaction, generated_image, usage_log  # noqa: F401

    Base.metadata.create_all(bind=engine)
