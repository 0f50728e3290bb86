from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from .core.config import settings

# Base para modelos (lo importa pos_engine.main)
Base = declarative_base()


def make_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        # Engine con timeout alto (contención ligera entre terminales)
        connect_args = {"check_same_thread": False, "timeout": 60}
    eng = create_engine(url, connect_args=connect_args, pool_pre_ping=True)

    if url.startswith("sqlite"):
        # PRAGMAs por conexión
        @event.listens_for(eng, "connect")
        def _on_connect(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                if ":memory:" not in url:
                    cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA busy_timeout=60000;")
                cur.execute("PRAGMA foreign_keys=ON;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            finally:
                cur.close()

    return eng


engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependencia FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
