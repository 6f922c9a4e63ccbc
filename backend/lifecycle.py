"""Survey status state machine.

Status only moves along the edges in ``TRANSITIONS``; every write is a
compare-and-set against the status the caller last read, so two writers
racing on the same survey cannot both win.
"""
from __future__ import annotations
import logging
from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Survey

log = logging.getLogger(__name__)

DRAFT, COLLECTING, ANALYSING, COMPLETED = "DRAFT", "COLLECTING", "ANALYSING", "COMPLETED"
STATUSES = (DRAFT, COLLECTING, ANALYSING, COMPLETED)

TRANSITIONS: dict[str, set[str]] = {
    DRAFT: {COLLECTING, ANALYSING},
    COLLECTING: {DRAFT, ANALYSING},
    ANALYSING: {COMPLETED, COLLECTING},
    COMPLETED: {ANALYSING, COLLECTING},
}

# statuses that only the analysis run may write
MANAGED_STATUSES = {ANALYSING, COMPLETED}


class IllegalTransition(Exception):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move survey from {current} to {target}")
        self.current = current
        self.target = target


class StaleStatus(Exception):
    """Raised when the stored status changed between read and write."""


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def transition(db: Session, survey_id: int, expected: str, target: str) -> None:
    """Move a survey from ``expected`` to ``target`` and commit.

    Raises:
        IllegalTransition: the edge is not in the table.
        StaleStatus: the row no longer holds ``expected``.
    """
    if not can_transition(expected, target):
        raise IllegalTransition(expected, target)
    result = db.execute(
        update(Survey)
        .where(Survey.id == survey_id, Survey.status == expected)
        .values(status=target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StaleStatus(f"Survey {survey_id} is no longer {expected}")
    db.commit()
    log.info("survey %s: %s -> %s", survey_id, expected, target)
