from typing import Any, Dict, List

import pytest

from pilot_core import Config, ProjectSandbox
from pilot_llm import CollaboratorError


@pytest.fixture(autouse=True)
def _quiet_config(monkeypatch):
    monkeypatch.setattr(Config, "ENABLE_DESCRIPTIONS", False)
    monkeypatch.setattr(Config, "LLM_RETRY_DELAY", 0.0)
    monkeypatch.setattr(Config, "DEBUG", False)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def sandbox(project):
    return ProjectSandbox.open(project)


class FakeCollaborators:
    """Scripted stand-ins for the model-backed collaborators."""

    def __init__(self, questions=None, todos=None, replies=None, context="CONTEXT DOC"):
        self.questions = questions if questions is not None else [
            {"question": "Which language?", "hint": "e.g. Python"},
            {"question": "Any tests?", "hint": ""},
        ]
        self.todos   = todos if todos is not None else [
            {"description": "Set up project", "category": "Setup"},
            {"description": "Write feature", "category": "Build"},
            {"description": "Write docs", "category": "Docs"},
        ]
        self.replies: List[Any] = list(replies or [])
        self.context  = context
        self.fail_questions = False
        self.fail_summary   = False
        self.fail_todos     = False
        self.summary_calls: List[Dict[str, Any]] = []
        self.todo_calls:    List[str] = []
        self.prompts:       List[str] = []

    def generate_questions(self, task: str):
        if self.fail_questions:
            raise CollaboratorError("questions unavailable")
        return list(self.questions)

    def summarize_answers(self, task: str, questions: List[str], answers: List[str]) -> str:
        self.summary_calls.append({"task": task, "questions": questions, "answers": answers})
        if self.fail_summary:
            raise CollaboratorError("summariser down")
        return self.context

    def generate_todo_list(self, context: str):
        self.todo_calls.append(context)
        if self.fail_todos:
            raise CollaboratorError("todo generator down")
        return list(self.todos)

    def call_model(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            return "Nothing to do."
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def collaborators():
    return FakeCollaborators()


@pytest.fixture
def make_collaborators():
    return FakeCollaborators
