"""Create the PostgreSQL database named in DATABASE_URL if it doesn't exist."""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import asyncpg
from sqlalchemy.engine import make_url

from app.core.config import settings


async def create_database() -> int:
    """Create the database if it doesn't exist."""
    url = make_url(settings.DATABASE_URL)
    database = url.database or "video_system"

    print(f"Database: {database} on {url.host or 'localhost'}:{url.port or 5432} as {url.username}")

    try:
        # Connect to the maintenance database
        conn = await asyncpg.connect(
            host=url.host or "localhost",
            port=url.port or 5432,
            user=url.username,
            password=url.password,
            database="postgres",
        )
    except asyncpg.exceptions.InvalidPasswordError:
        print("Error: invalid database password, check DATABASE_URL")
        return 1
    except OSError as e:
        print(f"Error: could not connect to PostgreSQL: {e}")
        return 1

    try:
        exists = await conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", database
        )
        if exists:
            print(f"Database '{database}' already exists.")
        else:
            await conn.execute(f'CREATE DATABASE "{database}"')
            print(f"Database '{database}' created.")
    finally:
        await conn.close()

    print("Next step: alembic upgrade head")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(create_database()))
