"""
planguard/features/plans/service.py

Plan resolution and assignment service.

Handles:
- Effective plan resolution (billing-synced plan -> manual assignment -> default)
- Plan assignment (creates or updates, one per owner)
- Assignment removal
"""

import logging
from typing import Any, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from planguard.core.clock import ensure_utc
from planguard.core.database import Database, assignments
from planguard.core.errors import PlanNotFoundError
from planguard.features.plans.configuration import Configuration
from planguard.models.assignment import Assignment, AssignmentSource
from planguard.models.owner import OwnerRef
from planguard.models.plan import Plan


logger = logging.getLogger("planguard.plans")


def _owner_filter(table, ref: OwnerRef):
    return (table.c.owner_type == ref.owner_type) & (table.c.owner_id == ref.owner_id)


class PlanResolver:
    def __init__(self, configuration: Configuration, database: Database):
        self.configuration = configuration
        self.database = database

    def effective_plan_for(self, owner: Any) -> Optional[Plan]:
        """
        Resolve the plan that governs `owner` right now.

        Order:
        1. Plan reported by the billing collaborator (plan key or processor price id)
        2. Manual / admin assignment
        3. Configured default plan

        Returns None only when an assignment points at a plan that is no longer
        configured; callers treat that as "nothing is allowed".
        """
        billed = self._plan_from_billing(owner)
        if billed is not None:
            return billed

        assignment = self.assignment_for(owner)
        if assignment is not None:
            if self.configuration.has_plan(assignment.plan_key):
                return self.configuration.get_plan(assignment.plan_key)
            logger.warning(
                "[plans] assignment references unknown plan",
                extra={"owner": str(assignment.owner), "plan_key": assignment.plan_key},
            )
            return None

        return self.configuration.get_default_plan()

    def plan_key_for(self, owner: Any) -> Optional[str]:
        plan = self.effective_plan_for(owner)
        return plan.key if plan else None

    def _plan_from_billing(self, owner: Any) -> Optional[Plan]:
        resolver = self.configuration.billing_plan_resolver
        if resolver is None:
            return None
        value = resolver(owner)
        if not value:
            return None
        if self.configuration.has_plan(value):
            return self.configuration.get_plan(value)
        plan = self.configuration.plan_for_price(value)
        if plan is None:
            logger.warning(
                "[plans] billing reported an unmapped plan",
                extra={"owner": str(OwnerRef.of(owner)), "billing_value": value},
            )
        return plan

    def assignment_for(self, owner: Any) -> Optional[Assignment]:
        ref = OwnerRef.of(owner)
        with self.database.session() as session:
            row = session.execute(
                select(assignments).where(_owner_filter(assignments, ref))
            ).first()
            if not row:
                return None
            return Assignment(
                owner=ref,
                plan_key=row.plan_key,
                source=AssignmentSource(row.source),
                assigned_at=ensure_utc(row.updated_at),
            )

    def assign_plan(
        self,
        owner: Any,
        plan_key: str,
        *,
        source: AssignmentSource = AssignmentSource.MANUAL,
    ) -> Assignment:
        """
        Assign plan to owner (creates or updates).

        Raises:
            PlanNotFoundError: If plan_key isn't configured
        """
        if not self.configuration.has_plan(plan_key):
            raise PlanNotFoundError(f"Plan {plan_key} not found")

        ref = OwnerRef.of(owner)
        source = AssignmentSource(source)
        now = self.configuration.now()
        values = {"plan_key": str(plan_key), "source": source.value, "updated_at": now}

        try:
            with self.database.session() as session:
                updated = session.execute(
                    update(assignments).where(_owner_filter(assignments, ref)).values(**values)
                )
                if updated.rowcount == 0:
                    session.execute(
                        insert(assignments).values(
                            owner_type=ref.owner_type,
                            owner_id=ref.owner_id,
                            created_at=now,
                            **values,
                        )
                    )
        except IntegrityError:
            # Concurrent first assignment; the row exists now.
            with self.database.session() as session:
                session.execute(
                    update(assignments).where(_owner_filter(assignments, ref)).values(**values)
                )

        logger.info(
            "[plans] plan assigned",
            extra={"owner": str(ref), "plan_key": plan_key, "source": source.value},
        )
        return Assignment(owner=ref, plan_key=str(plan_key), source=source, assigned_at=now)

    def remove_assignment(self, owner: Any) -> bool:
        ref = OwnerRef.of(owner)
        with self.database.session() as session:
            result = session.execute(delete(assignments).where(_owner_filter(assignments, ref)))
            return result.rowcount > 0
