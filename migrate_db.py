"""
Database Migration Script

Creates the tables used by the dispatcher if they do not exist yet:
- jobs (one-shot jobs, indexed by scheduled_for)
- crons (recurring job descriptors)
"""
import os
import sys

from dotenv import load_dotenv

from dispatcher.store import Store, StoreError


def migrate():
    """Run database migration."""
    print("=" * 60)
    print("Database Migration - Job Dispatcher")
    print("=" * 60)

    load_dotenv()
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("\nDATABASE_URL is not set.")
        sys.exit(1)

    print(f"\nDatabase URL: {db_url}")
    print("\nThis will create the following tables if missing:")
    print("  - jobs")
    print("  - crons")

    if "--force" not in sys.argv:
        response = input("\nProceed with migration? (yes/no): ")
        if response.lower() not in ['yes', 'y']:
            print("Migration cancelled.")
            sys.exit(0)
    else:
        print("\n--force flag detected, proceeding with migration...")

    store = Store.from_url(db_url, echo=True)
    try:
        print("\nCreating tables...")
        store.init_schema()
    except StoreError as e:
        print("\n" + "=" * 60)
        print(f"Migration failed: {e}")
        print("=" * 60)
        sys.exit(1)
    finally:
        store.close()

    print("\n" + "=" * 60)
    print("Migration completed successfully!")
    print("=" * 60)
    print("\nNext step: start the dispatcher service:")
    print("   python -m services.dispatcher_service")
    print()


if __name__ == "__main__":
    migrate()
