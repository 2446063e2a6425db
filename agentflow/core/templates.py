"""Template manager for workflow definition handling."""

from datetime import datetime
from typing import List, Optional, Set

from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from ..models.core import (
    StepKind,
    TemplateSummary,
    ValidationResult,
    WorkflowTemplate,
    WorkflowTemplateDefinition,
)
from ..storage.database import get_session_factory
from ..storage.models import ExecutionModel, WorkflowTemplateModel
from .exceptions import AuthorizationError, NotFoundError, TemplateValidationError
from .ledger import session_scope
from .logging import get_logger

logger = get_logger(__name__)


class TemplateManager:
    """Manages workflow template definitions, validation, and storage."""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 executor_registry=None, tool_backend=None):
        """
        Args:
            session_factory: Session factory; defaults to the configured database
            executor_registry: When given, step kinds without an executor are rejected
            tool_backend: When given, tool names it does not know produce warnings
        """
        self._session_factory = session_factory or get_session_factory()
        self.executor_registry = executor_registry
        self.tool_backend = tool_backend

    def create_template(self, user_id: str, definition: WorkflowTemplateDefinition) -> WorkflowTemplate:
        """
        Validate and store a new template owned by ``user_id``.

        Raises:
            TemplateValidationError: If validation fails
            LedgerError: If storage operation fails
        """
        logger.info(f"Creating new template: {definition.name}")
        self._raise_if_invalid(definition)

        with session_scope(self._session_factory, "create_template") as session:
            model = WorkflowTemplateModel(
                user_id=user_id,
                name=definition.name,
                description=definition.description,
                mode=definition.mode,
                definition=definition.model_dump(mode="json"),
                is_active=definition.is_active,
                is_public=definition.is_public,
                created_at=datetime.utcnow(),
                updated_at=datetime.utcnow(),
            )
            session.add(model)
            session.flush()
            template = self._to_template(model)

        logger.info(f"Successfully created template '{definition.name}' with ID: {template.template_id}")
        return template

    def get_template(self, template_id: str, user_id: str) -> WorkflowTemplate:
        """
        Retrieve a template the user owns or that is public.

        Raises:
            NotFoundError: If the template does not exist or is not visible to the user
        """
        with session_scope(self._session_factory, "get_template") as session:
            model = session.get(WorkflowTemplateModel, template_id)
            if model is None or (model.user_id != user_id and not model.is_public):
                raise NotFoundError(f"Template '{template_id}' not found", resource="template", resource_id=template_id)
            return self._to_template(model)

    def list_templates(self, user_id: str, include_public: bool = True,
                       active_only: bool = False) -> List[TemplateSummary]:
        with session_scope(self._session_factory, "list_templates") as session:
            query = session.query(WorkflowTemplateModel)
            if include_public:
                query = query.filter(or_(WorkflowTemplateModel.user_id == user_id,
                                         WorkflowTemplateModel.is_public.is_(True)))
            else:
                query = query.filter(WorkflowTemplateModel.user_id == user_id)
            if active_only:
                query = query.filter(WorkflowTemplateModel.is_active.is_(True))

            return [
                TemplateSummary(
                    template_id=model.id,
                    name=model.name,
                    description=model.description or "",
                    mode=model.mode,
                    is_active=model.is_active,
                    is_public=model.is_public,
                    step_count=len((model.definition or {}).get("steps", [])),
                    user_id=model.user_id,
                    created_at=model.created_at,
                )
                for model in query.order_by(WorkflowTemplateModel.created_at.desc()).all()
            ]

    def update_template(self, template_id: str, user_id: str,
                        definition: WorkflowTemplateDefinition) -> WorkflowTemplate:
        """
        Replace a template's definition.

        Steps keep their kind: an update that changes the kind of an existing
        step id is rejected.

        Raises:
            NotFoundError: If the template does not exist
            AuthorizationError: If the user does not own it
            TemplateValidationError: If the new definition is invalid
        """
        self._raise_if_invalid(definition)

        with session_scope(self._session_factory, "update_template") as session:
            model = self._load_owned(session, template_id, user_id)

            previous = WorkflowTemplateDefinition.model_validate(model.definition)
            previous_kinds = {step.id: step.kind for step in previous.steps}
            changed = [
                step.id for step in definition.steps
                if step.id in previous_kinds and previous_kinds[step.id] != step.kind
            ]
            if changed:
                raise TemplateValidationError(
                    f"Step kind cannot change for existing steps: {', '.join(changed)}",
                    validation_errors=[f"Step '{step_id}' changed kind" for step_id in changed],
                    template_id=template_id
                )

            model.name = definition.name
            model.description = definition.description
            model.mode = definition.mode
            model.definition = definition.model_dump(mode="json")
            model.is_active = definition.is_active
            model.is_public = definition.is_public
            model.updated_at = datetime.utcnow()
            template = self._to_template(model)

        logger.info(f"Updated template {template_id}")
        return template

    def delete_template(self, template_id: str, user_id: str) -> bool:
        """Delete an owned template; past executions keep their snapshot and lose the link."""
        with session_scope(self._session_factory, "delete_template") as session:
            model = self._load_owned(session, template_id, user_id)
            session.query(ExecutionModel).filter(ExecutionModel.template_id == template_id).update(
                {ExecutionModel.template_id: None}, synchronize_session=False
            )
            session.delete(model)

        logger.info(f"Successfully deleted template with ID: {template_id}")
        return True

    def validate_template(self, definition: WorkflowTemplateDefinition) -> ValidationResult:
        """
        Check a definition for problems the model validators cannot see.

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not definition.steps:
            errors.append("Template must contain at least one step")

        for step in definition.steps:
            if self.executor_registry is not None and not self.executor_registry.supports(step.kind):
                errors.append(f"Step '{step.id}' has unsupported kind '{step.kind.value}'")
            if step.kind == StepKind.TOOL_CALL:
                tool_name = step.config.get("tool")
                if not tool_name:
                    errors.append(f"Tool call step '{step.id}' has no tool configured")
                elif self.tool_backend is not None and self.tool_backend.has_tool(tool_name) is False:
                    warnings.append(f"Tool '{tool_name}' used by step '{step.id}' is not registered")
            elif step.kind == StepKind.AI_PROMPT and not step.config.get("prompt"):
                warnings.append(f"Prompt step '{step.id}' has an empty prompt")
            elif step.kind == StepKind.WEBHOOK and not step.config.get("url"):
                errors.append(f"Webhook step '{step.id}' has no url configured")
            if len(step.connections) > 1:
                warnings.append(
                    f"Step '{step.id}' has {len(step.connections)} connections; only the first is followed"
                )

        unreachable = self._unreachable_steps(definition)
        if unreachable:
            warnings.append(
                f"Steps not reachable from the start step will never run: {', '.join(sorted(unreachable))}"
            )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def parse_definition(payload: dict) -> WorkflowTemplateDefinition:
        """Build a definition from a raw mapping, reporting pydantic errors as validation errors."""
        try:
            return WorkflowTemplateDefinition.model_validate(payload)
        except ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise TemplateValidationError(
                f"Template validation failed: {'; '.join(messages)}",
                validation_errors=messages
            )

    def _raise_if_invalid(self, definition: WorkflowTemplateDefinition) -> None:
        result = self.validate_template(definition)
        if not result.is_valid:
            error_msg = f"Template validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise TemplateValidationError(error_msg, validation_errors=result.errors)
        if result.warnings:
            logger.warning(f"Template validation warnings: {'; '.join(result.warnings)}")

    @staticmethod
    def _unreachable_steps(definition: WorkflowTemplateDefinition) -> Set[str]:
        """Steps the single-next walk from the start step never visits."""
        visited: Set[str] = set()
        current = definition.entry_step_id
        while current and current not in visited:
            visited.add(current)
            step = definition.get_step(current)
            current = step.next_step_id if step else None
        return {step.id for step in definition.steps} - visited

    def _load_owned(self, session, template_id: str, user_id: str) -> WorkflowTemplateModel:
        model = session.get(WorkflowTemplateModel, template_id)
        if model is None:
            raise NotFoundError(f"Template '{template_id}' not found", resource="template", resource_id=template_id)
        if model.user_id != user_id:
            raise AuthorizationError(f"User {user_id} does not own template {template_id}", user_id=user_id)
        return model

    @staticmethod
    def _to_template(model: WorkflowTemplateModel) -> WorkflowTemplate:
        definition = dict(model.definition or {})
        for key in ("template_id", "user_id", "created_at", "updated_at"):
            definition.pop(key, None)
        definition.update(
            name=model.name,
            description=model.description or "",
            mode=model.mode,
            is_active=model.is_active,
            is_public=model.is_public,
        )
        return WorkflowTemplate(
            template_id=model.id,
            user_id=model.user_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
            **definition
        )
