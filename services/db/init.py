"""Create the ticketing schema."""

from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import SQLModel

from .connection import get_engine
from .models import *  # noqa: F401,F403

log = logging.getLogger(__name__)


def init_db(db_path: Optional[str] = None, drop_existing: bool = False):
    """Bind the engine and make sure every table exists.

    ``drop_existing`` wipes the schema first (test fixtures only).
    """
    engine = get_engine(db_path)
    if drop_existing:
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    log.info(f"✓ Schema ready ({len(SQLModel.metadata.tables)} tables)")
    return engine
