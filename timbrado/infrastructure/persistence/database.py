# timbrado/infrastructure/persistence/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import config


def build_engine(database_url: str):
    # SQLite se comparte entre los hilos del API y del worker
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db(bind=None) -> None:
    """Crea las tablas del timbrado si no existen."""
    from timbrado.infrastructure.persistence import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
