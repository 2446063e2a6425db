"""Tests for the step interpreter."""

import pytest

from agentflow.core.exceptions import AuthorizationError, InvalidStateError, TemplateValidationError
from agentflow.core.orchestrator import StepInterpreter
from agentflow.models.core import AuditActionType, ExecutionStatusEnum, StepKind, StepRunStatus


def statuses(ledger, execution_id):
    return {step.step_id: step.status for step in ledger.get_steps(execution_id)}


class TestSuccessfulRuns:
    """Test cases for executions that run to completion."""

    def test_every_step_succeeds(self, interpreter, ledger, build_template, fake_llm):
        template = build_template([
            {"id": "draft", "type": "ai_prompt", "config": {"prompt": "Write about {{topic}}"}},
            {"id": "count", "type": "tool_call", "config": {"tool": "word_count", "params": {"text": "{{step_1_output}}"}}},
            {"id": "check", "type": "condition", "config": {"condition": "topic == 'sales'"}},
        ])

        result = interpreter.run(template, "alice", {"topic": "sales"})

        assert result.status == ExecutionStatusEnum.SUCCESS
        assert result.steps_completed == 3
        assert result.steps_failed == 0
        assert result.total_tokens == 100
        assert fake_llm.calls[0]["prompt"] == "Write about sales"
        assert result.outputs["count"]["words"] == 1
        assert result.outputs["check"] == "true"
        assert set(statuses(ledger, result.execution_id).values()) == {StepRunStatus.SUCCESS}

        logs = ledger.get_audit_logs(result.execution_id)
        assert sum(1 for log in logs if log.action_type == AuditActionType.WORKFLOW_END) == 1
        assert len(ledger.get_billing_records("alice")) == 1

    def test_delay_then_prompt(self, interpreter, ledger, build_template, fake_llm):
        template = build_template([
            {"id": "wait", "type": "delay", "config": {"delay": 50}},
            {"id": "summarize", "type": "ai_prompt", "config": {"prompt": "Summarize {{topic}}"}},
        ])

        result = interpreter.run(template, "alice", {"topic": "sales"})

        assert result.status == ExecutionStatusEnum.SUCCESS
        assert ledger.get_step(result.execution_id, "wait").result == {"delayed": 50}
        assert ledger.get_step(result.execution_id, "summarize").tool_parameters["prompt"] == "Summarize sales"
        assert fake_llm.calls[0]["prompt"] == "Summarize sales"

    def test_only_first_connection_followed(self, interpreter, ledger, build_template):
        template = build_template([
            {"id": "a", "type": "delay", "config": {"delay": 0}, "connections": ["b", "c"]},
            {"id": "b", "type": "delay", "config": {"delay": 0}},
            {"id": "c", "type": "delay", "config": {"delay": 0}},
        ], chain=False)

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.SUCCESS
        assert statuses(ledger, result.execution_id) == {
            "a": StepRunStatus.SUCCESS,
            "b": StepRunStatus.SUCCESS,
            "c": StepRunStatus.SKIPPED,
        }

    def test_template_variables_are_defaults(self, interpreter, build_template, fake_llm):
        template = build_template(
            [{"id": "p", "type": "ai_prompt", "config": {"prompt": "Hello {{who}}"}}],
            variables={"who": "team"},
        )
        interpreter.run(template, "alice")
        interpreter.run(template, "alice", {"who": "Ada"})
        assert [call["prompt"] for call in fake_llm.calls] == ["Hello team", "Hello Ada"]

    def test_template_model_used(self, interpreter, build_template, fake_llm, ledger):
        template = build_template([{"id": "p", "type": "ai_prompt", "config": {"prompt": "x"}}], model_id="gpt-4o-mini")
        result = interpreter.run(template, "alice")
        assert fake_llm.calls[0]["model"] == "gpt-4o-mini"
        assert ledger.get_execution(result.execution_id).model_id == "gpt-4o-mini"


class TestFailurePolicies:

    def test_stop_policy(self, interpreter, ledger, build_template):
        template = build_template([
            {"id": "a", "type": "delay", "config": {"delay": 0}},
            {"id": "b", "type": "tool_call", "config": {"tool": "explode"}},
            {"id": "c", "type": "delay", "config": {"delay": 0}},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_step_id == "b"
        assert "boom" in result.error_message
        assert statuses(ledger, result.execution_id) == {
            "a": StepRunStatus.SUCCESS,
            "b": StepRunStatus.FAILED,
            "c": StepRunStatus.PENDING,
        }
        assert len(ledger.get_billing_records("alice")) == 1

    def test_continue_policy_passes_empty_output(self, interpreter, ledger, build_template, fake_llm):
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "explode"}, "onError": "continue"},
            {"id": "b", "type": "ai_prompt", "config": {"prompt": "Previous: [{{step_1_output}}]"}},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.SUCCESS
        assert result.steps_failed == 1
        assert fake_llm.calls[0]["prompt"] == "Previous: []"
        assert ledger.get_step(result.execution_id, "a").status == StepRunStatus.FAILED

    def test_retry_until_success(self, interpreter, ledger, build_template, tool_registry, flaky_tool):
        flaky = flaky_tool(failures=2)
        tool_registry.register_tool("flaky", flaky, "Fails twice")
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "flaky"}, "onError": "retry", "retryCount": 2},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.SUCCESS
        step = ledger.get_step(result.execution_id, "a")
        assert step.retry_count == 2
        assert step.result == {"ok": True, "attempt": 3}
        logs = ledger.get_audit_logs(result.execution_id)
        assert sum(1 for log in logs if log.action_type == AuditActionType.RETRY) == 2

    def test_retries_exhausted(self, interpreter, ledger, build_template, tool_registry, flaky_tool):
        tool_registry.register_tool("flaky", flaky_tool(failures=5), "Fails often")
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "flaky"}, "onError": "retry", "retryCount": 2},
            {"id": "b", "type": "delay", "config": {"delay": 0}},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_step_id == "a"
        assert ledger.get_step(result.execution_id, "a").retry_count == 2
        assert ledger.get_step(result.execution_id, "b").status == StepRunStatus.PENDING

    def test_retry_count_ignored_without_retry_policy(self, interpreter, ledger, build_template, tool_registry, flaky_tool):
        flaky = flaky_tool(failures=1)
        tool_registry.register_tool("flaky", flaky, "Fails once")
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "flaky"}, "retryCount": 3},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.FAILED
        assert flaky.calls == 1

    def test_unknown_tool_not_retried(self, interpreter, ledger, build_template):
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "nope"}, "onError": "retry", "retryCount": 3},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.FAILED
        assert ledger.get_step(result.execution_id, "a").retry_count == 0

    def test_step_timeout(self, interpreter, ledger, build_template):
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "slow", "params": {"seconds": 0.5}}, "timeout": 0.1},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.FAILED
        assert "timed out" in result.error_message

    def test_retry_reresolves_params_when_enabled(self, ledger, executors, config, build_template, tool_registry):
        seen = []

        def record(text=""):
            seen.append(text)
            if len(seen) == 1:
                raise RuntimeError("first call fails")
            return text

        tool_registry.register_tool("record", record, "Records its input")
        config.retry_reresolve_params = True
        interpreter = StepInterpreter(ledger, executors, config)
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "record", "params": {"text": "{{topic}}"}},
             "onError": "retry", "retryCount": 1},
        ])
        try:
            result = interpreter.run(template, "alice", {"topic": "sales"})
        finally:
            interpreter.shutdown()

        assert result.status == ExecutionStatusEnum.SUCCESS
        assert seen == ["sales", "sales"]


class TestRunValidation:

    def test_inactive_template_creates_nothing(self, interpreter, ledger, build_template):
        template = build_template([{"id": "a", "type": "delay"}], is_active=False)
        with pytest.raises(TemplateValidationError):
            interpreter.run(template, "alice")
        assert ledger.list_executions("alice") == []

    def test_missing_required_input(self, interpreter, ledger, build_template):
        template = build_template(
            [{"id": "a", "type": "ai_prompt", "config": {"prompt": "{{topic}}"}}],
            input_schema={"required": ["topic"]},
        )
        with pytest.raises(TemplateValidationError) as exc_info:
            interpreter.run(template, "alice")
        assert "topic" in exc_info.value.message
        assert ledger.list_executions("alice") == []

    def test_empty_template(self, interpreter, build_template):
        with pytest.raises(TemplateValidationError):
            interpreter.run(build_template([]), "alice")


class TestCancellation:

    def test_cancel_mid_run(self, interpreter, ledger, build_template, tool_registry):
        def cancel_current(**kwargs):
            running = ledger.get_running_executions("alice")
            ledger.cancel(running[0].execution_id)
            return "cancelled"

        tool_registry.register_tool("cancel_current", cancel_current, "Cancels the running execution")
        template = build_template([
            {"id": "a", "type": "tool_call", "config": {"tool": "cancel_current"}},
            {"id": "b", "type": "delay", "config": {"delay": 0}},
        ])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.CANCELLED
        steps = statuses(ledger, result.execution_id)
        assert steps["a"] == StepRunStatus.FAILED
        assert steps["b"] == StepRunStatus.PENDING
        assert ledger.get_step(result.execution_id, "a").error_message == "Execution cancelled"
        assert ledger.get_billing_records("alice") == []

    def test_cancel_finished_execution(self, interpreter, build_template):
        result = interpreter.run(build_template([{"id": "a", "type": "delay", "config": {"delay": 0}}]), "alice")
        with pytest.raises(InvalidStateError):
            interpreter.cancel(result.execution_id, "alice")

    def test_cancel_requires_owner(self, interpreter, build_template):
        template = build_template([
            {"id": "a", "type": "approval", "config": {"message": "ok?"}},
            {"id": "b", "type": "delay", "config": {"delay": 0}},
        ])
        result = interpreter.run(template, "alice")
        with pytest.raises(AuthorizationError):
            interpreter.cancel(result.execution_id, "mallory")


class TestResume:

    def test_resume_requires_running_execution(self, interpreter, build_template):
        template = build_template([
            {"id": "a", "type": "approval"},
            {"id": "b", "type": "delay", "config": {"delay": 0}},
        ])
        result = interpreter.run(template, "alice")
        assert result.status == ExecutionStatusEnum.PAUSED
        with pytest.raises(InvalidStateError):
            interpreter.resume(result.execution_id, "b", "alice")


class TestUnexpectedErrors:
    """Test cases for errors raised outside the step executors themselves."""

    def test_unresolvable_params_follow_continue_policy(self, interpreter, ledger, build_template,
                                                        fake_llm, monkeypatch):
        def unresolvable(step, context):
            raise OverflowError("cannot convert float infinity to integer")

        monkeypatch.setattr(interpreter.executors.get(StepKind.DELAY), "resolve_params", unresolvable)
        template = build_template([
            {"id": "wait", "type": "delay", "config": {"delay": "{{d}}"}, "onError": "continue"},
            {"id": "summarize", "type": "ai_prompt", "config": {"prompt": "After [{{step_1_output}}]"}},
        ])

        result = interpreter.run(template, "alice", {"d": "inf"})

        assert result.status == ExecutionStatusEnum.SUCCESS
        wait = ledger.get_step(result.execution_id, "wait")
        assert wait.status == StepRunStatus.FAILED
        assert "infinity" in wait.error_message
        assert fake_llm.calls[0]["prompt"] == "After []"

    def test_unresolvable_params_stop_the_run(self, interpreter, ledger, build_template, monkeypatch):
        def unresolvable(step, context):
            raise OverflowError("cannot convert float infinity to integer")

        monkeypatch.setattr(interpreter.executors.get(StepKind.DELAY), "resolve_params", unresolvable)
        template = build_template([
            {"id": "wait", "type": "delay", "config": {"delay": "{{d}}"}},
            {"id": "after", "type": "delay", "config": {"delay": 0}},
        ])

        result = interpreter.run(template, "alice", {"d": "inf"})

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_step_id == "wait"
        assert statuses(ledger, result.execution_id) == {
            "wait": StepRunStatus.FAILED,
            "after": StepRunStatus.PENDING,
        }

    def test_crash_finalizes_execution_before_propagating(self, interpreter, ledger, build_template, monkeypatch):
        def disk_full(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(ledger, "record_step_result", disk_full)
        template = build_template([{"id": "wait", "type": "delay", "config": {"delay": 0}}])

        with pytest.raises(RuntimeError):
            interpreter.run(template, "alice")

        [execution] = ledger.list_executions("alice")
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.error_step_id == "wait"
        assert "disk full" in execution.error_message
        assert len(ledger.get_billing_records("alice")) == 1

    def test_runaway_condition_counts_as_false(self, interpreter, ledger, build_template):
        template = build_template([{"id": "check", "type": "condition", "config": {"condition": "-" * 990 + "1"}}])

        result = interpreter.run(template, "alice")

        assert result.status == ExecutionStatusEnum.SUCCESS
        check = ledger.get_step(result.execution_id, "check")
        assert check.status == StepRunStatus.SUCCESS
        assert check.result == "false"
