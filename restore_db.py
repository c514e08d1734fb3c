# restore_db.py
"""
Restores the storefront database from a backup file.
Run: python restore_db.py backups/giftiz_backup_20251124_223015_000000.json
Stop the API first; it keeps the DB handle open.
"""
import os
import shutil
import sys

import settings


class RestoreError(RuntimeError):
    pass


def restore(backup_file: str) -> str:
    if not os.path.exists(backup_file):
        raise RestoreError(f"Backup file not found: {backup_file}")
    shutil.copy2(backup_file, settings.DB_FILE)
    return settings.DB_FILE


def main(argv) -> int:
    if len(argv) != 2:
        print("Usage: python restore_db.py <backup_file>")
        return 1

    backup_file = argv[1]
    if not os.path.exists(backup_file):
        print(f"Backup file not found: {backup_file}")
        return 1

    if os.path.exists(settings.DB_FILE):
        confirm = input(f"Overwrite current {settings.DB_FILE}? (type YES): ")
        if confirm != "YES":
            print("Restore cancelled.")
            return 0
    else:
        print(f"No current {settings.DB_FILE}, restoring will create it.")

    restore(backup_file)
    print(f"RESTORED SUCCESSFULLY from {backup_file}")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
