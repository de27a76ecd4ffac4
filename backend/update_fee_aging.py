import sys
from datetime import date

from backend.school_module.database import SessionLocal
from backend.school_module.dues import update_fee_aging


def main(argv: list[str]) -> int:
    as_of = date.fromisoformat(argv[1]) if len(argv) > 1 else date.today()
    print(f"Updating fee aging as of {as_of.isoformat()}...")

    db = SessionLocal()
    try:
        updated = update_fee_aging(db, now=as_of)
    except Exception as e:
        print(f"Error updating fee aging: {e}")
        return 1
    finally:
        db.close()

    print(f"Updated aging for {updated} fee dues.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
