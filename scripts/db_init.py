#!/usr/bin/env python3
"""
Database initialization script for FlowPay.

Creates the transfers table. Equivalent to ``flask --app wsgi init-db``
without building the web application.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from flowpay.database import close_all, get_database_url, get_engine, get_health_status, init_all
from flowpay.models import Base


def main():
    """Initialize database and create all tables."""
    print("=" * 60)
    print("FlowPay Database Initialization")
    print("=" * 60)

    try:
        db_url = get_database_url()
        print(f"\n📊 Database URL: {db_url.split('@')[1] if '@' in db_url else db_url.split(':')[0]}")

        print("\n🔌 Initializing connections...")
        init_all()

        print("\n🔨 Creating database tables...")
        Base.metadata.create_all(get_engine())
        print("✅ All tables created successfully")

        health = get_health_status()
        print("\n📊 Database Health:")
        print(f"  Database: {health['database']['status']}")
        print(f"  Redis: {health['redis']['status']}")

        if health["database"]["status"] != "healthy":
            print("\n⚠️  Database is not healthy. Check configuration.")
            return 1

        print("\n✅ Database initialization complete!")
        return 0

    except Exception as e:
        print(f"\n❌ Error initializing database: {e}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        close_all()


if __name__ == "__main__":
    sys.exit(main())
