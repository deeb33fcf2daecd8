from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from finepay.config import get_database_url

DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

# Entities leave the session detached after commit; stores hand them to callers
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
Base = declarative_base()
