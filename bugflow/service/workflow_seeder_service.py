import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from jsonschema.exceptions import SchemaError

from bugflow.config import BUG_ASSESSMENT_WORKFLOW, SYSTEM_USER, WORKFLOW_DIR
from bugflow.dsl.dsl_loader import SchemaValidationError, load_and_validate_definition
from bugflow.dsl.dsl_model import ValidationResult
from bugflow.errors import BugflowError, DefinitionNotFoundError
from bugflow.persistence.models import WorkflowDefinition
from bugflow.service.workflow_definition_service import WorkflowDefinitionService

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


class WorkflowSeederService:
    """Publishes the bundled workflow documents found in the workflow directory."""

    def __init__(self, definitions: WorkflowDefinitionService, workflow_dir: Union[str, Path] = WORKFLOW_DIR):
        self.definitions = definitions
        self.workflow_dir = Path(workflow_dir)

    def definition_files(self) -> List[Path]:
        if not self.workflow_dir.is_dir():
            return []
        return sorted(p for p in self.workflow_dir.iterdir() if p.suffix in DEFINITION_SUFFIXES)

    async def seed_all(self) -> Dict[str, int]:
        counts = {"seeded": 0, "updated": 0, "unchanged": 0, "errors": 0}
        if not self.workflow_dir.is_dir():
            logger.warning(f"[seed_all] Workflow definitions directory not found: {self.workflow_dir}")
            return counts

        for path in self.definition_files():
            try:
                outcome = await self.seed_from_file(path)
            except (BugflowError, SchemaValidationError, SchemaError, ValueError, OSError):
                counts["errors"] += 1
                logger.exception(f"[seed_all] Error seeding workflow definition from {path.name}")
                continue
            counts[outcome] += 1
        logger.info(
            f"[seed_all] Seeded: {counts['seeded']}, updated: {counts['updated']}, "
            f"unchanged: {counts['unchanged']}, errors: {counts['errors']}"
        )
        return counts

    async def seed_from_file(self, path: Union[str, Path], created_by: str = SYSTEM_USER) -> str:
        """Returns "seeded", "updated" or "unchanged"."""
        schema = load_and_validate_definition(path)
        existing = await self.definitions.load_by_name(schema.name)
        if existing is not None and existing.definition_json == schema.to_json():
            logger.info(f"[seed_from_file] {schema.name} v{existing.version} is up to date")
            return "unchanged"

        definition = await self.definitions.publish(schema, created_by=created_by)
        logger.info(f"[seed_from_file] {Path(path).name}: {definition.name} v{definition.version}")
        return "updated" if existing is not None else "seeded"

    async def needs_seeding(self) -> bool:
        return not await self.definitions.list_active()

    async def seed_if_needed(self) -> Optional[Dict[str, int]]:
        if not await self.needs_seeding():
            return None
        return await self.seed_all()

    async def force_reseed(self) -> Dict[str, int]:
        logger.info("[force_reseed] Deactivating all workflow definitions")
        repo = self.definitions.repo
        try:
            await repo.deactivate()
            await repo.commit()
        except Exception:
            await repo.rollback()
            raise
        return await self.seed_all()

    async def validate_all(self) -> Dict[str, ValidationResult]:
        return {
            definition.name: self.definitions.validate_report(definition)
            for definition in await self.definitions.list_active()
        }

    async def get_bug_assessment_workflow(self) -> WorkflowDefinition:
        definition = await self.definitions.load_by_name(BUG_ASSESSMENT_WORKFLOW)
        if definition is None:
            raise DefinitionNotFoundError(
                f"{BUG_ASSESSMENT_WORKFLOW} not found. Please ensure workflow definitions have been seeded."
            )
        return definition
