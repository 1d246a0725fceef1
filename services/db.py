from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from config import DB_URL
from models.base import Base

engine = create_engine(DB_URL)
SessionLocal = sessionmaker(bind=engine)

@event.listens_for(engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    if engine.dialect.name == "sqlite":
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

def init_db():
    """Create all tables in the database."""
    import models  # noqa: F401  register all tables on Base.metadata
    Base.metadata.create_all(bind=engine)
