import os

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import DATABASE_URL
from app.logging_config import app_logger


# Создание engine с особыми настройками для SQLite, чтобы уменьшить блокировки
if DATABASE_URL.startswith("sqlite"):
    # каталог под файл БД, иначе sqlite не сможет его создать
    db_path = DATABASE_URL.replace("sqlite:///", "", 1)
    if db_path and db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    connect_args = {"check_same_thread": False, "timeout": 30}
    engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA synchronous=NORMAL"))
    except SQLAlchemyError as e:
        # без WAL база работает, только с более частыми блокировками
        app_logger.warning(f"SQLite PRAGMA not applied: {e}")
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

# Создание сессии
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Базовый класс для моделей
Base = declarative_base()


# Зависимость для получения сессии БД
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
