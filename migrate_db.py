"""
Database Migration Script

Creates the database schema used by the cron job service:
- object_state: Per-key state of keyed objects (job spec, next run)
- invocations: Handler invocations and the queue of delayed calls
- invocation_journal: Recorded step outcomes replayed on retry
"""
import sys

from sqlmodel import create_engine

from cronjob.models import get_db_url, init_db


def migrate():
    """Run database migration."""
    print("=" * 60)
    print("Database Migration - Cron Job Service")
    print("=" * 60)

    db_url = get_db_url()
    print(f"\nDatabase URL: {db_url}")
    print("\nThis will create the following tables if missing:")
    print("  - object_state")
    print("  - invocations")
    print("  - invocation_journal")

    # Check for --force flag
    if "--force" not in sys.argv:
        response = input("\nProceed with migration? (yes/no): ")
        if response.lower() not in ["yes", "y"]:
            print("Migration cancelled.")
            sys.exit(0)
    else:
        print("\n--force flag detected, proceeding with migration...")

    try:
        print("\nConnecting to database...")
        engine = create_engine(db_url, echo=True)

        print("\nCreating tables...")
        init_db(engine)

        print("\n" + "=" * 60)
        print("Migration completed successfully!")
        print("=" * 60)
        print("\nNext steps:")
        print("1. Start the cron job service:")
        print("   python -m services.cron_service")
        print("\n2. Create the example job:")
        print("   python create_example_job.py")
        print()

    except Exception as e:
        print("\n" + "=" * 60)
        print(f"Migration failed: {e}")
        print("=" * 60)
        sys.exit(1)


if __name__ == "__main__":
    migrate()
