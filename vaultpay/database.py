from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from vaultpay.config import DATABASE_URL, DB_POOL_SIZE

if not DATABASE_URL:
    raise RuntimeError(
        "DATABASE_URL is not set. Set it (or DB_HOST/DB_NAME/DB_USER/DB_PASSWORD) in your .env file."
    )

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=DB_POOL_SIZE,
        max_overflow=0,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
