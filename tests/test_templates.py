"""Tests for template storage and validation."""

import pytest

from agentflow.core.exceptions import AuthorizationError, NotFoundError, TemplateValidationError
from agentflow.core.templates import TemplateManager
from agentflow.models.core import StepKind


@pytest.fixture
def sample_definition(build_template):
    return build_template([
        {"id": "draft", "type": "ai_prompt", "config": {"prompt": "Draft a note about {{topic}}"}},
        {"id": "count", "type": "tool_call", "config": {"tool": "word_count", "params": {"text": "{{step_1_output}}"}}},
    ], description="Drafts and measures a note", mode="Marketing")


class TestTemplateCrud:
    """Test cases for create, read, update and delete."""

    def test_create_and_get(self, template_manager, sample_definition):
        template = template_manager.create_template("alice", sample_definition)

        assert template.template_id
        assert template.user_id == "alice"
        assert template.mode == "Marketing"

        fetched = template_manager.get_template(template.template_id, "alice")
        assert fetched.name == "Test workflow"
        assert [step.id for step in fetched.steps] == ["draft", "count"]
        assert fetched.steps[1].kind == StepKind.TOOL_CALL

    def test_private_template_hidden_from_others(self, template_manager, sample_definition):
        template = template_manager.create_template("alice", sample_definition)
        with pytest.raises(NotFoundError):
            template_manager.get_template(template.template_id, "bob")

    def test_public_template_visible(self, template_manager, build_template):
        definition = build_template([{"id": "a", "type": "delay"}], is_public=True)
        template = template_manager.create_template("alice", definition)

        assert template_manager.get_template(template.template_id, "bob").is_public
        assert [s.template_id for s in template_manager.list_templates("bob")] == [template.template_id]
        assert template_manager.list_templates("bob", include_public=False) == []

    def test_list_active_only(self, template_manager, build_template):
        template_manager.create_template("alice", build_template([{"id": "a", "type": "delay"}], name="On"))
        template_manager.create_template(
            "alice", build_template([{"id": "a", "type": "delay"}], name="Off", is_active=False)
        )

        names = {s.name for s in template_manager.list_templates("alice", active_only=True)}
        assert names == {"On"}
        assert len(template_manager.list_templates("alice")) == 2

    def test_update(self, template_manager, sample_definition, build_template):
        template = template_manager.create_template("alice", sample_definition)
        changed = build_template([
            {"id": "draft", "type": "ai_prompt", "config": {"prompt": "Shorter"}},
            {"id": "notify", "type": "webhook", "config": {"url": "https://hooks.example.com"}},
        ], name="Renamed")

        updated = template_manager.update_template(template.template_id, "alice", changed)

        assert updated.name == "Renamed"
        assert [step.id for step in updated.steps] == ["draft", "notify"]

    def test_update_cannot_change_step_kind(self, template_manager, sample_definition, build_template):
        template = template_manager.create_template("alice", sample_definition)
        changed = build_template([
            {"id": "draft", "type": "delay"},
            {"id": "count", "type": "tool_call", "config": {"tool": "word_count"}},
        ])
        with pytest.raises(TemplateValidationError):
            template_manager.update_template(template.template_id, "alice", changed)

    def test_update_requires_owner(self, template_manager, build_template):
        definition = build_template([{"id": "a", "type": "delay"}], is_public=True)
        template = template_manager.create_template("alice", definition)
        with pytest.raises(AuthorizationError):
            template_manager.update_template(template.template_id, "bob", definition)

    def test_delete_keeps_executions(self, template_manager, interpreter, ledger, build_template):
        template = template_manager.create_template(
            "alice", build_template([{"id": "a", "type": "delay", "config": {"delay": 0}}])
        )
        result = interpreter.run(template, "alice")
        assert ledger.get_execution(result.execution_id).template_id == template.template_id

        assert template_manager.delete_template(template.template_id, "alice")

        with pytest.raises(NotFoundError):
            template_manager.get_template(template.template_id, "alice")
        execution = ledger.get_execution(result.execution_id)
        assert execution.template_id is None
        assert execution.workflow_name == "Test workflow"

    def test_delete_missing(self, template_manager):
        with pytest.raises(NotFoundError):
            template_manager.delete_template("missing", "alice")


class TestTemplateValidation:

    def test_valid_template(self, template_manager, sample_definition):
        result = template_manager.validate_template(sample_definition)
        assert result.is_valid
        assert result.errors == []

    def test_tool_call_without_tool(self, template_manager, build_template):
        result = template_manager.validate_template(build_template([{"id": "a", "type": "tool_call"}]))
        assert not result.is_valid
        assert "no tool" in result.errors[0]

    def test_webhook_without_url(self, template_manager, build_template):
        result = template_manager.validate_template(build_template([{"id": "a", "type": "webhook"}]))
        assert not result.is_valid

    def test_create_rejects_invalid(self, template_manager, build_template):
        with pytest.raises(TemplateValidationError) as exc_info:
            template_manager.create_template("alice", build_template([]))
        assert exc_info.value.validation_errors

    def test_warnings(self, template_manager, build_template):
        definition = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "not_registered"}, "connections": ["b", "c"]},
            {"id": "b", "type": "ai_prompt"},
            {"id": "c", "type": "delay"},
        ], chain=False)

        result = template_manager.validate_template(definition)

        assert result.is_valid
        warnings = " ".join(result.warnings)
        assert "not_registered" in warnings
        assert "empty prompt" in warnings
        assert "only the first is followed" in warnings
        assert "c" in result.warnings[-1]

    def test_unknown_tool_not_flagged_without_backend(self, session_factory, build_template):
        manager = TemplateManager(session_factory)
        definition = build_template([{"id": "a", "type": "tool_call", "config": {"tool": "anything"}}])
        assert manager.validate_template(definition).warnings == []


class TestParseDefinition:

    def test_parses_aliases(self):
        definition = TemplateManager.parse_definition({
            "name": "Flow",
            "steps": [{"id": "a", "type": "tool_call", "onError": "retry", "retryCount": 2, "config": {"tool": "echo"}}],
        })
        step = definition.steps[0]
        assert step.kind == StepKind.TOOL_CALL
        assert step.max_retries == 2

    @pytest.mark.parametrize("payload", [
        {"name": "", "steps": [{"id": "a", "type": "delay"}]},
        {"name": "Flow", "steps": [{"id": "a", "type": "teleport"}]},
        {"name": "Flow", "steps": [{"id": "a", "type": "delay"}, {"id": "a", "type": "delay"}]},
        {"name": "Flow", "steps": [{"id": "a", "type": "delay", "connections": ["missing"]}]},
        {"name": "Flow", "steps": [
            {"id": "a", "type": "delay", "connections": ["b"]},
            {"id": "b", "type": "delay", "connections": ["a"]},
        ]},
        {"name": "Flow", "steps": [{"id": "bad id!", "type": "delay"}]},
    ])
    def test_rejects_malformed(self, payload):
        with pytest.raises(TemplateValidationError):
            TemplateManager.parse_definition(payload)
