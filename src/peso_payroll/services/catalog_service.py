"""Salary component catalog and per-employee component assignments."""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from sqlalchemy import select

from peso_payroll.actors import Actor, Role
from peso_payroll.calculators.components import seed_system_components
from peso_payroll.errors import StateConflict, ValidationFailure
from peso_payroll.models import EmployeeSalaryComponent, SalaryComponent
from peso_payroll.services.base import ServiceBase

logger = logging.getLogger(__name__)

CATALOG_ROLES = frozenset({Role.PAYROLL_OFFICER, Role.OFFICE_ADMIN, Role.SYSTEM})


class CatalogService(ServiceBase):
    """Maintains SalaryComponent rows. System components are permanent."""

    async def seed_components(self, actor: Actor) -> list[SalaryComponent]:
        """Insert any missing system component; returns the ones added."""
        actor.require(CATALOG_ROLES, "seed the component catalog")
        existing = set(
            (await self.session.execute(select(SalaryComponent.code))).scalars().all()
        )
        added = [c for c in seed_system_components() if c.code not in existing]
        self.session.add_all(added)
        await self.session.flush()
        if added:
            logger.info("Seeded %d salary component(s)", len(added))
        return added

    async def get_by_code(self, code: str) -> SalaryComponent | None:
        result = await self.session.execute(
            select(SalaryComponent).where(
                SalaryComponent.code == code, SalaryComponent.deleted_at.is_(None)
            )
        )
        return result.scalar_one_or_none()

    async def list_components(self, active_only: bool = True) -> list[SalaryComponent]:
        stmt = select(SalaryComponent).where(SalaryComponent.deleted_at.is_(None))
        if active_only:
            stmt = stmt.where(SalaryComponent.is_active.is_(True))
        result = await self.session.execute(
            stmt.order_by(SalaryComponent.display_order, SalaryComponent.code)
        )
        return list(result.scalars().all())

    async def create_component(
        self,
        code: str,
        name: str,
        component_type: str,
        category: str,
        calculation_method: str,
        actor: Actor,
        **fields: object,
    ) -> SalaryComponent:
        actor.require(CATALOG_ROLES, "create salary components")
        if await self.get_by_code(code) is not None:
            raise StateConflict(f"Salary component {code} already exists")
        if calculation_method == "ot_multiplier" and fields.get("ot_multiplier") is None:
            raise ValidationFailure("OT components need an ot_multiplier", "ot_multiplier")
        if calculation_method == "percentage_of_component" and not fields.get(
            "reference_component_code"
        ):
            raise ValidationFailure(
                "Component percentages need a reference component", "reference_component_code"
            )
        component = SalaryComponent(
            code=code,
            name=name,
            component_type=component_type,
            category=category,
            calculation_method=calculation_method,
            is_system_component=False,
            **fields,
        )
        self.session.add(component)
        await self.session.flush()
        return component

    async def deactivate(self, salary_component_id: UUID, actor: Actor) -> SalaryComponent:
        actor.require(CATALOG_ROLES, "deactivate salary components")
        component = await self._get(SalaryComponent, salary_component_id)
        self._guard_system(component, "deactivated")
        component.is_active = False
        await self.session.flush()
        logger.info("Deactivated salary component %s", component.code)
        return component

    async def delete(self, salary_component_id: UUID, actor: Actor) -> SalaryComponent:
        actor.require(CATALOG_ROLES, "delete salary components")
        component = await self._get(SalaryComponent, salary_component_id)
        self._guard_system(component, "deleted")
        component.is_active = False
        component.deleted_at = self.clock.now()
        await self.session.flush()
        logger.info("Deleted salary component %s", component.code)
        return component

    async def assign(
        self,
        employee_id: UUID,
        code: str,
        effective_date: date,
        actor: Actor,
        **fields: object,
    ) -> EmployeeSalaryComponent:
        """Attach a component to an employee with optional amount/percentage overrides."""
        actor.require(CATALOG_ROLES, "assign salary components")
        component = await self.get_by_code(code)
        if component is None or not component.is_active:
            raise ValidationFailure(f"Unknown or inactive salary component {code}", "code")
        assignment = EmployeeSalaryComponent(
            employee_id=employee_id,
            salary_component_id=component.salary_component_id,
            effective_date=effective_date,
            **fields,
        )
        self.session.add(assignment)
        await self.session.flush()
        return assignment

    @staticmethod
    def _guard_system(component: SalaryComponent, action: str) -> None:
        if component.is_system_component:
            raise StateConflict(f"System component {component.code} cannot be {action}")
