import os
import sys

import psycopg
from dotenv import load_dotenv

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "db", "schema.sql")


def apply_schema(database_url: str) -> int:
    """Run db/schema.sql and return the number of public tables afterwards."""
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        ddl = f.read()

    # Leaving the block commits; an error inside rolls the whole DDL back
    with psycopg.connect(database_url) as conn:
        conn.execute(ddl)
        row = conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public'"
        ).fetchone()
    return row[0]


def main():
    load_dotenv()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("DATABASE_URL is not set; nothing to initialize.")
        return 1

    try:
        tables = apply_schema(database_url)
    except psycopg.Error as e:
        print(f"Schema apply failed: {e}")
        return 1

    print(f"Agri-vet schema ready ({tables} tables in public).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
