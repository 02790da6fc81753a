"""Migration / setup helper
This script initializes the database schema used by the matching service.
Run: python migrate.py
For managed databases use the alembic revisions under alembic/versions instead.
"""
from db import init_db, DATABASE_URL


def main():
    init_db()
    print(f"Database initialized ({DATABASE_URL})")


if __name__ == "__main__":
    main()
