"""Pytest configuration and fixtures."""

import time
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agentflow.clients.llm import Completion, LanguageModelClient
from agentflow.clients.tools import CompositeToolBackend, ToolRegistry
from agentflow.config import get_testing_config
from agentflow.core.approval import ApprovalGate
from agentflow.core.executors import ExecutorRegistry
from agentflow.core.ledger import ExecutionLedger
from agentflow.core.orchestrator import StepInterpreter
from agentflow.core.templates import TemplateManager
from agentflow.models.core import WorkflowTemplateDefinition
from agentflow.storage import models  # noqa: F401  registers the tables on Base
from agentflow.storage.database import Base
from agentflow.tools.builtin import DEFAULT_TOOLS


class FakeLanguageModel(LanguageModelClient):
    """Records prompts and answers with a fixed completion."""

    def __init__(self, text: str = "summary", tokens_used: int = 100,
                 input_tokens: Optional[int] = None, output_tokens: Optional[int] = None):
        self.text = text
        self.tokens_used = tokens_used
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[Dict[str, Any]] = []

    def complete(self, prompt: str, max_tokens: int, model: str) -> Completion:
        self.calls.append({"prompt": prompt, "max_tokens": max_tokens, "model": model})
        return Completion(
            text=self.text,
            tokens_used=self.tokens_used,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


class FlakyTool:
    """Tool that raises for its first ``failures`` calls and then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"ok": True, "attempt": self.calls}


def explode(**kwargs):
    raise RuntimeError("boom")


def slow(seconds: float = 0.5, **kwargs):
    time.sleep(float(seconds))
    return {"slept": seconds}


@pytest.fixture
def config():
    return get_testing_config()


@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    yield factory

    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return ExecutionLedger(session_factory)


@pytest.fixture
def fake_llm():
    return FakeLanguageModel()


@pytest.fixture
def tool_registry():
    registry = ToolRegistry()
    for name, function, description in DEFAULT_TOOLS:
        registry.register_tool(name, function, description)
    registry.register_tool("explode", explode, "Always fails")
    registry.register_tool("slow", slow, "Sleeps before answering")
    return registry


@pytest.fixture
def flaky_tool():
    """Factory for tools that fail a given number of times before succeeding."""
    return FlakyTool


@pytest.fixture
def tool_backend(tool_registry):
    return CompositeToolBackend(tool_registry)


@pytest.fixture
def executors(config, fake_llm, tool_backend):
    return ExecutorRegistry.create_default(config, fake_llm, tool_backend)


@pytest.fixture
def interpreter(ledger, executors, config):
    step_interpreter = StepInterpreter(ledger, executors, config)
    yield step_interpreter
    step_interpreter.shutdown()


@pytest.fixture
def approval_gate(ledger):
    return ApprovalGate(ledger)


@pytest.fixture
def template_manager(session_factory, executors, tool_backend):
    return TemplateManager(session_factory, executors, tool_backend)


@pytest.fixture
def build_template():
    """Build a template definition from step dicts, chaining them in order unless connections are given."""

    def _build(steps: List[Dict[str, Any]], chain: bool = True, **fields) -> WorkflowTemplateDefinition:
        steps = [dict(step) for step in steps]
        if chain:
            for current, following in zip(steps, steps[1:]):
                current.setdefault("connections", [following["id"]])
        fields.setdefault("name", "Test workflow")
        return WorkflowTemplateDefinition.model_validate({"steps": steps, **fields})

    return _build
