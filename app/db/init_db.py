"""
Initialize the database with pgvector extension and create tables.

Run this script to set up your database:
    python -m app.db.init_db
"""
from sqlalchemy import text

from app.config import Settings
from .database import Base, create_db_engine
from . import models  # noqa: F401  (registers tables on Base.metadata)


def init_db(settings: Settings = None):
    """Create pgvector extension and all tables with indexes"""
    settings = settings or Settings.from_env()
    engine = create_db_engine(settings)

    print("Initializing database...")

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            conn.commit()
            print("✓ pgvector extension enabled")

    # Create all tables (SQLAlchemy will create indexes defined in __table_args__)
    Base.metadata.create_all(bind=engine)
    engine.dispose()
    print("✓ Database tables created")

    print("\n✅ Database initialization complete!")
    print("\nTables created:")
    for table_name in sorted(Base.metadata.tables):
        print(f"  - {table_name}")


if __name__ == "__main__":
    init_db()
