#!/usr/bin/env python3
"""
Database initialization script for lnbridge.

Creates all tables and reports database/Redis health. For production schema
changes, use migrations instead.
"""
import sys

from dotenv import load_dotenv

load_dotenv()

from lnbridge.config import get_config, get_database_url  # noqa: E402
from lnbridge.database import close_all, get_health_status, init_all  # noqa: E402


def main():
    """Initialize database and create all tables."""
    print("=" * 60)
    print("lnbridge Database Initialization")
    print("=" * 60)

    cfg = get_config()
    db_url = get_database_url(cfg)
    print(f"\nDatabase URL: {db_url.split('@')[1] if '@' in db_url else db_url}")

    try:
        print("\nCreating database tables...")
        init_all(cfg, create_tables=True)
        print("All tables created successfully")

        health = get_health_status()
        print("\nDatabase Health:")
        print(f"  Database: {health['database']['status']}")
        print(f"  Redis: {health['redis']['status']}")

        if health["database"]["status"] != "healthy":
            print("\nDatabase is not healthy. Check configuration.")
            return 1

        print("\nDatabase initialization complete!")
        print("\nNext steps:")
        print("  1. Start the application: gunicorn wsgi:application")
        print("  2. Schedule maintenance: flask --app wsgi lnbridge cleanup")
        return 0
    finally:
        close_all()


if __name__ == "__main__":
    sys.exit(main())
