"""
Simple script to create the threads and transcripts tables.
Run this once to set up the tables in your PostgreSQL database.

Usage: python create_threads_table.py
"""

from sqlalchemy import text
from models import Base, Thread, Transcript  # Import models to register them
from database import engine

TABLES = (Thread.__tablename__, Transcript.__tablename__)

if __name__ == "__main__":
    print("Creating database tables...")

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Verify tables were created
    with engine.connect() as conn:
        for table in TABLES:
            result = conn.execute(
                text("SELECT EXISTS (SELECT 1 FROM information_schema.tables WHERE table_name = :name)"),
                {"name": table}
            )
            if result.scalar():
                print(f"✓ {table.capitalize()} table created successfully!")
            else:
                print(f"✗ Failed to create {table} table")

    engine.dispose()
