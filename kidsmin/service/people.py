from __future__ import annotations

from typing import Optional

from kidsmin.logging import get_logger
from kidsmin.service.errors import ValidationError
from kidsmin.storage.models import VALID_GRADES, Individual

logger = get_logger(__name__)


class PeopleService:
    """Creates individual records that admins later invite to sign in."""

    def __init__(self, store) -> None:
        self.store = store

    def create_individual(
        self,
        first_name: Optional[str],
        last_name: Optional[str],
        grade: Optional[str],
        *,
        special: bool = False,
        created_by: Optional[str] = None,
    ) -> Individual:
        if not first_name or not last_name or not grade:
            raise ValidationError("Missing firstName, lastName, or grade.")
        grade = str(grade).strip()
        if grade not in VALID_GRADES:
            raise ValidationError(
                "Invalid grade.",
                status_code=422,
                detail={"allowed": list(VALID_GRADES)},
            )
        individual = self.store.create_individual(
            first_name.strip(), last_name.strip(), grade=grade, special=bool(special)
        )
        logger.info("individual_created", individual_id=individual.id, created_by=created_by)
        return individual
