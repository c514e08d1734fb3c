# backup_db.py
"""
Creates a timestamped copy of the storefront DB file (still encrypted when
DB_ENCRYPTION is on; restoring needs the same .secret_key).
Run: python backup_db.py
"""
import logging
import os
import shutil
from datetime import datetime
from typing import Optional

import settings

logger = logging.getLogger("giftiz.backup")


def ensure_backup_dir() -> None:
    if not os.path.exists(settings.BACKUP_DIR):
        os.makedirs(settings.BACKUP_DIR)
        logger.info("Created backup folder: %s", settings.BACKUP_DIR)


def create_backup() -> Optional[str]:
    if not os.path.exists(settings.DB_FILE):
        logger.warning("No %s found! Nothing to backup.", settings.DB_FILE)
        return None

    ensure_backup_dir()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    base = os.path.splitext(os.path.basename(settings.DB_FILE))[0]
    backup_path = os.path.join(settings.BACKUP_DIR, f"{base}_backup_{timestamp}.json")

    shutil.copy2(settings.DB_FILE, backup_path)
    logger.info("Backup created: %s", backup_path)
    return backup_path


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    create_backup()
