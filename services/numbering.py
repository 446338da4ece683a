"""Human-readable sequential numbers (JOB-00001, INV-00001, ...) backed by the store."""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import settings
from models.models import NumberSequence

logger = logging.getLogger(__name__)

JOB = "JOB"
INVOICE = "INV"
ESTIMATE = "EST"
AGREEMENT = "SA"
SERVICE_HISTORY = "SH"


def next_value(db: Session, name: str) -> int:
    """
    Advance the named counter and return its new value.

    The increment is a single UPDATE so concurrent writers serialize on the
    counter row. A counter is created on first use; if two transactions race
    to create it, the primary key rejects the loser's insert at flush.
    """
    result = db.execute(
        update(NumberSequence)
        .where(NumberSequence.name == name)
        .values(last_value=NumberSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(NumberSequence(name=name, last_value=1))
        db.flush()
        logger.info(f"Started number sequence {name}")
        return 1
    return db.execute(select(NumberSequence.last_value).where(NumberSequence.name == name)).scalar_one()


def next_number(db: Session, prefix: str) -> str:
    """Next formatted number for a prefix, e.g. next_number(db, "JOB") -> "JOB-00042"."""
    return f"{prefix}-{next_value(db, prefix):0{settings.SEQUENCE_WIDTH}d}"
