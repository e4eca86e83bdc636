import logging
import re
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from bugflow.config import SYSTEM_USER
from bugflow.dsl.dsl_model import WorkflowSchema, ValidationResult, parse_workflow_schema
from bugflow.dsl.dsl_validator import validate_structure
from bugflow.errors import InvalidDefinitionError
from bugflow.persistence.models import WorkflowDefinition
from bugflow.persistence.repositories.workflow_definition_repository import WorkflowDefinitionRepository
from bugflow.utils.timefmt import utc_now

logger = logging.getLogger(__name__)

_SEMVER = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def next_version(current: Optional[str]) -> str:
    """Patch bump of `current`; "1.0.0" when there is none, a timestamped patch when unparseable."""
    if not current:
        return "1.0.0"
    match = _SEMVER.match(current.strip())
    if not match:
        return f"1.0.{utc_now():%Y%m%d%H%M%S}"
    major, minor, patch = (int(part) for part in match.groups())
    return f"{major}.{minor}.{patch + 1}"


class WorkflowDefinitionService:
    def __init__(self, repo: WorkflowDefinitionRepository):
        self.repo = repo

    # ─────────────────────────────── lookups ────────────────────────────────

    async def load_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        return await self.repo.get_active_by_name(name)

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return await self.repo.get_by_id(definition_id)

    async def list_active(self) -> List[WorkflowDefinition]:
        return await self.repo.list_active()

    async def list_versions(self, name: str) -> List[WorkflowDefinition]:
        return await self.repo.list_by_name(name)

    @staticmethod
    def load_schema(definition: WorkflowDefinition) -> WorkflowSchema:
        return parse_workflow_schema(definition.definition_json)

    # ─────────────────────────────── validation ─────────────────────────────

    def validate_report(self, definition: Union[WorkflowSchema, WorkflowDefinition]) -> ValidationResult:
        if isinstance(definition, WorkflowSchema):
            return validate_structure(definition)
        try:
            schema = self.load_schema(definition)
        except (PydanticValidationError, ValueError) as e:
            report = ValidationResult()
            report.add_error("definitionJson", "INVALID_JSON", f"Workflow schema could not be parsed: {e}")
            return report
        return validate_structure(schema)

    def validate(self, definition: Union[WorkflowSchema, WorkflowDefinition]) -> bool:
        return self.validate_report(definition).is_valid

    # ─────────────────────────────── writes ─────────────────────────────────

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Insert a new row or replace the mutable fields (description, version,
        schema payload, active flag) of an existing one. Does not deactivate
        other versions of the same name.
        """
        report = self.validate_report(definition)
        if not report.is_valid:
            raise InvalidDefinitionError(
                f"Invalid workflow definition: {'; '.join(report.messages)}", details=report
            )

        existing = None
        if definition.workflow_definition_id:
            existing = await self.repo.get_by_id(definition.workflow_definition_id)

        if existing is None or existing is definition:
            logger.info(f"[save] Creating workflow definition {definition.name} v{definition.version}")
            return await self.repo.create(definition)

        existing.description = definition.description
        existing.version = definition.version
        existing.definition_json = definition.definition_json
        existing.is_active = definition.is_active
        existing.updated_at = utc_now()
        logger.info(f"[save] Updating workflow definition {existing.name} v{existing.version}")
        return await self.repo.update(existing)

    async def publish(
        self,
        schema: WorkflowSchema,
        created_by: str = SYSTEM_USER,
        description: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Validate, deactivate prior versions of the name and insert the next version as active."""
        report = validate_structure(schema)
        if not report.is_valid:
            raise InvalidDefinitionError(
                f"Invalid workflow definition: {'; '.join(report.messages)}", details=report
            )

        versions = await self.repo.list_by_name(schema.name)
        version = next_version(versions[0].version if versions else None)

        definition = WorkflowDefinition(
            name=schema.name,
            description=description if description is not None else schema.description,
            version=version,
            definition_json=schema.to_json(),
            is_active=True,
            created_by=created_by,
        )
        try:
            deactivated = await self.repo.deactivate(schema.name)
            await self.repo.add(definition)
            await self.repo.commit()
        except Exception:
            await self.repo.rollback()
            raise
        logger.info(
            f"[publish] Published {schema.name} v{version} (deactivated {deactivated} prior version(s))"
        )
        return definition
