#!/usr/bin/env python3
"""
pilot_tasks.py — Task orchestration: clarification → todo list → stepwise execution.

Phases:

    TASK_ENTRY → CLARIFYING → CONTEXT_READY → EXECUTING → COMPLETED

While working on todo item k the model sees the global context, the stored
summary of every item before k, the active item and that item's own
transcript. Finished items are never replayed in full, so the prompt grows
with the number of items rather than with the length of the conversation.

Durable state (global context, todo list, summaries) lives in TaskStore under
<project>/.codepilot/. Session state (clarification cursor, transcripts) lives
on the orchestrator.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pilot_commands import BackgroundDescriber, CommandExecutor, CommandResult, format_results
from pilot_core import (
    Config, ErrorKind, Log, ProjectNotSetError, ProjectSandbox,
    _atomic_write,
)
from pilot_files import (
    FileRequest, detect_file_request, format_file_contents, fulfil_file_request,
    strip_file_request,
)
from pilot_llm import FILE_OPERATIONS_PROMPT, CollaboratorError


class TaskPhase(Enum):
    TASK_ENTRY    = "task_entry"
    CLARIFYING    = "clarifying"
    CONTEXT_READY = "context_ready"
    EXECUTING     = "executing"
    COMPLETED     = "completed"


class TodoStatus(Enum):
    PENDING   = "pending"
    ACTIVE    = "active"
    COMPLETED = "completed"


_STATUS_ICONS = {TodoStatus.PENDING: "⏳", TodoStatus.ACTIVE: "🔄", TodoStatus.COMPLETED: "✅"}


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass
class TodoItem:
    index:       int
    description: str
    status:      TodoStatus    = TodoStatus.PENDING
    summary:     Optional[str] = None
    category:    str           = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "description": self.description,
                "status": self.status.value, "summary": self.summary,
                "category": self.category}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TodoItem":
        try:
            status = TodoStatus(d.get("status", "pending"))
        except ValueError:
            status = TodoStatus.PENDING
        return TodoItem(index=int(d["index"]), description=str(d.get("description", "")),
                        status=status, summary=d.get("summary"),
                        category=str(d.get("category") or ""))

    @property
    def icon(self) -> str:
        return _STATUS_ICONS.get(self.status, "❓")


@dataclass
class Question:
    text: str
    hint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"question": self.text, "hint": self.hint}


@dataclass
class ClarificationSession:
    project_id:       str
    task_description: str
    questions:        List[Question]
    answers:          List[str] = field(default_factory=list)
    current_index:    int       = 0

    @property
    def current(self) -> Optional[Question]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def is_last(self) -> bool:
        return self.current_index >= len(self.questions) - 1

    def record(self, answer: str):
        if not self.questions:
            return
        while len(self.answers) <= self.current_index:
            self.answers.append("")
        self.answers[self.current_index] = (answer or "").strip()

    def next(self):
        if not self.is_last:
            self.current_index += 1

    def previous(self):
        self.current_index = max(0, self.current_index - 1)

    def answer_at(self, i: int) -> str:
        return self.answers[i] if i < len(self.answers) else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id":       self.project_id,
            "task_description": self.task_description,
            "questions":        [q.to_dict() for q in self.questions],
            "answers":          [self.answer_at(i) for i in range(len(self.questions))],
            "current_index":    self.current_index,
        }


@dataclass
class StepResult:
    success: bool
    phase:   TaskPhase
    error:   str                 = ""
    kind:    Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success, "phase": self.phase.value}
        if not self.success:
            d["error"] = self.error
            d["kind"]  = self.kind.value if self.kind else None
        return d


@dataclass
class TurnResult:
    success: bool
    reply:   str                     = ""
    results: List[CommandResult]     = field(default_factory=list)
    files:   List[Dict[str, str]]    = field(default_factory=list)
    error:   str                     = ""
    kind:    Optional[ErrorKind]     = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": self.success,
            "reply":   self.reply,
            "results": [r.to_dict() for r in self.results],
            "files":   self.files,
        }
        if not self.success:
            d["error"] = self.error
            d["kind"]  = self.kind.value if self.kind else None
        return d


# =============================================================================
# PERSISTENCE
# =============================================================================

class TaskStore:
    """Task artifacts for one project. Reads never raise; writes are atomic."""

    CONTEXT_FILE   = "global_context.txt"
    TODO_FILE      = "todo_list.json"
    SUMMARIES_FILE = "completed_items.json"

    def __init__(self, sandbox: ProjectSandbox):
        self._dir = sandbox.pilot_dir

    def _path(self, name: str) -> Path:
        return self._dir / name

    def _load_json(self, name: str, default: Any) -> Any:
        p = self._path(name)
        if not p.exists(): return default
        try:
            return json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            Log.error(f"Failed to load {name}: {e}")
            return default

    def load_context(self) -> str:
        p = self._path(self.CONTEXT_FILE)
        if not p.exists(): return ""
        try:
            return p.read_text(encoding="utf-8")
        except OSError as e:
            Log.error(f"Failed to load global context: {e}")
            return ""

    def save_context(self, text: str):
        _atomic_write(self._path(self.CONTEXT_FILE), text)

    def load_todos(self) -> List[TodoItem]:
        data = self._load_json(self.TODO_FILE, [])
        items = data.get("items", []) if isinstance(data, dict) else data
        out = []
        for d in items if isinstance(items, list) else []:
            try:
                out.append(TodoItem.from_dict(d))
            except (KeyError, TypeError, ValueError) as e:
                Log.warning(f"Skipping malformed todo entry: {e}")
        return sorted(out, key=lambda t: t.index)

    def save_todos(self, items: List[TodoItem]):
        _atomic_write(self._path(self.TODO_FILE),
                      {"items": [t.to_dict() for t in items],
                       "updated": datetime.now().isoformat()})

    def load_summaries(self) -> Dict[int, Dict[str, str]]:
        data = self._load_json(self.SUMMARIES_FILE, {})
        out: Dict[int, Dict[str, str]] = {}
        for k, v in (data.items() if isinstance(data, dict) else []):
            try:
                idx = int(k)
            except ValueError:
                continue
            if isinstance(v, dict) and isinstance(v.get("summary"), str):
                out[idx] = v
        return out

    def save_summary(self, index: int, summary: str) -> Dict[str, str]:
        data  = {str(k): v for k, v in self.load_summaries().items()}
        entry = {"summary": summary, "timestamp": datetime.now().isoformat()}
        data[str(index)] = entry
        _atomic_write(self._path(self.SUMMARIES_FILE), data)
        return entry


# =============================================================================
# ORCHESTRATOR
# =============================================================================

def _questions_from(raw: List[Any]) -> List[Question]:
    out = []
    for q in raw or []:
        if isinstance(q, Question):
            out.append(q)
        elif isinstance(q, str) and q.strip():
            out.append(Question(q.strip()))
        elif isinstance(q, dict) and str(q.get("question") or "").strip():
            out.append(Question(str(q["question"]).strip(), str(q.get("hint") or "")))
    return out


def _todos_from(raw: List[Any]) -> List[TodoItem]:
    items = []
    for entry in raw or []:
        if isinstance(entry, TodoItem):
            desc, cat = entry.description, entry.category
        elif isinstance(entry, str):
            desc, cat = entry, ""
        elif isinstance(entry, dict):
            desc, cat = str(entry.get("description") or ""), str(entry.get("category") or "")
        else:
            continue
        if desc.strip():
            items.append(TodoItem(index=len(items), description=desc.strip(), category=cat))
    return items


class TaskOrchestrator:
    """Drives one task run for one project.

    *collaborators* provides generate_questions(task), summarize_answers(task,
    questions, answers), generate_todo_list(context) and call_model(prompt);
    each may raise CollaboratorError.
    """

    def __init__(self, sandbox: ProjectSandbox, collaborators: Any,
                 store: Optional[TaskStore] = None,
                 describer: Optional[BackgroundDescriber] = None):
        if sandbox.root is None:
            raise ProjectNotSetError()
        self.sandbox        = sandbox
        self.collaborators  = collaborators
        self.store          = store or TaskStore(sandbox)
        self.executor       = CommandExecutor(sandbox, describer)
        self.phase          = TaskPhase.TASK_ENTRY
        self.task           = ""
        self.session:        Optional[ClarificationSession] = None
        self.global_context: Optional[str] = None
        self.todos:          List[TodoItem] = []
        self.summaries:      Dict[int, str] = {}
        self.active_index:   Optional[int]  = None
        self.transcripts:    Dict[int, List[Dict[str, str]]] = {}

    # ── helpers ───────────────────────────────────────────────────────────────

    def _ok(self) -> StepResult:
        return StepResult(True, self.phase)

    def _fail(self, error: str, kind: ErrorKind) -> StepResult:
        Log.warning(error)
        return StepResult(False, self.phase, error, kind)

    def _wrong_phase(self, action: str) -> StepResult:
        return self._fail(f"Cannot {action} while {self.phase.value}",
                          ErrorKind.MALFORMED_COMMAND)

    @property
    def active_item(self) -> Optional[TodoItem]:
        if self.active_index is None or not (0 <= self.active_index < len(self.todos)):
            return None
        return self.todos[self.active_index]

    @property
    def transcript(self) -> List[Dict[str, str]]:
        if self.active_index is None:
            return []
        return self.transcripts.setdefault(self.active_index, [])

    # ── clarification ─────────────────────────────────────────────────────────

    def start(self, task_description: str) -> StepResult:
        if self.phase not in (TaskPhase.TASK_ENTRY, TaskPhase.CLARIFYING):
            return self._wrong_phase("start a task")
        task = (task_description or "").strip()
        if not task:
            return self._fail("Task description is empty", ErrorKind.MALFORMED_COMMAND)
        try:
            questions = _questions_from(self.collaborators.generate_questions(task))
        except CollaboratorError as e:
            return self._fail(f"Question generation failed: {e}", ErrorKind.COLLABORATOR_FAILURE)
        self.task           = task
        self.global_context = None
        self.session = ClarificationSession(str(self.sandbox.root), task, questions)
        self.phase   = TaskPhase.CLARIFYING
        Log.task(f"Task: {task[:80]}")
        if not questions:
            Log.info("No clarification needed")
            return self.finalize_clarification()
        Log.info(f"{len(questions)} clarification question(s)")
        return self._ok()

    def next_question(self, answer: str) -> StepResult:
        if self.phase != TaskPhase.CLARIFYING or self.session is None:
            return self._wrong_phase("answer a question")
        self.session.record(answer)
        if self.session.is_last:
            return self.finalize_clarification()
        self.session.next()
        return self._ok()

    def previous_question(self, answer: str) -> StepResult:
        if self.phase != TaskPhase.CLARIFYING or self.session is None:
            return self._wrong_phase("go back")
        self.session.record(answer)
        self.session.previous()
        return self._ok()

    def finalize_clarification(self) -> StepResult:
        if self.phase != TaskPhase.CLARIFYING or self.session is None:
            return self._wrong_phase("finalize clarification")
        s = self.session
        if self.global_context is None:
            questions = [q.text for q in s.questions]
            answers   = [s.answer_at(i) for i in range(len(questions))]
            try:
                context = self.collaborators.summarize_answers(s.task_description, questions, answers)
            except CollaboratorError as e:
                return self._fail(f"Summarisation failed: {e}", ErrorKind.COLLABORATOR_FAILURE)
            try:
                self.store.save_context(context)
            except OSError as e:
                return self._fail(f"Failed to save global context: {e}", ErrorKind.IO_ERROR)
            self.global_context = context
            Log.success("Global context ready")
        try:
            todos = _todos_from(self.collaborators.generate_todo_list(self.global_context))
        except CollaboratorError as e:
            return self._fail(f"Todo generation failed: {e}", ErrorKind.COLLABORATOR_FAILURE)
        if not todos:
            return self._fail("Todo generation returned no items", ErrorKind.COLLABORATOR_FAILURE)
        try:
            self.store.save_todos(todos)
        except OSError as e:
            return self._fail(f"Failed to save todo list: {e}", ErrorKind.IO_ERROR)
        self.todos       = todos
        self.summaries   = {}
        self.transcripts = {}
        self.session     = None
        self.phase       = TaskPhase.CONTEXT_READY
        Log.success(f"Todo list ready ({len(todos)} items)")
        return self._ok()

    # ── execution ─────────────────────────────────────────────────────────────

    def _save_todos(self) -> Optional[StepResult]:
        try:
            self.store.save_todos(self.todos)
        except OSError as e:
            return self._fail(f"Failed to save todo list: {e}", ErrorKind.IO_ERROR)
        return None

    def _activate(self, index: Optional[int]):
        for t in self.todos:
            if t.status == TodoStatus.ACTIVE and t.index != index:
                t.status = TodoStatus.PENDING
        self.active_index = index
        if index is None:
            self.phase = TaskPhase.COMPLETED
            return
        if self.todos[index].status == TodoStatus.PENDING:
            self.todos[index].status = TodoStatus.ACTIVE
        self.phase = TaskPhase.EXECUTING
        Log.task(f"Item {index + 1}/{len(self.todos)}: {self.todos[index].description[:80]}")

    def _next_pending(self, after: int) -> Optional[int]:
        pending = [t.index for t in self.todos if t.status == TodoStatus.PENDING]
        later   = [i for i in pending if i > after]
        if later:   return later[0]
        if pending: return pending[0]
        return None

    def begin_execution(self) -> StepResult:
        if self.phase != TaskPhase.CONTEXT_READY:
            return self._wrong_phase("begin execution")
        for t in self.todos:
            t.status = TodoStatus.PENDING
        self._activate(0 if self.todos else None)
        return self._save_todos() or self._ok()

    def build_prompt(self) -> str:
        item = self.active_item
        if item is None:
            raise RuntimeError("No active todo item")
        parts = [FILE_OPERATIONS_PROMPT.rstrip()]
        if self.global_context:
            parts.append("# GLOBAL CONTEXT\n\n" + self.global_context.strip())
        done = [(i, self.summaries[i]) for i in sorted(self.summaries) if i < item.index]
        if done:
            lines = ["# COMPLETED ITEMS"]
            for i, summary in done:
                lines.append(f"\n## Item {i + 1}: {self.todos[i].description}\nSummary: {summary}")
            parts.append("\n".join(lines))
        parts.append(f"# CURRENT ITEM ({item.index + 1} of {len(self.todos)})\n\n{item.description}")
        if self.transcript:
            lines = ["# CONVERSATION"]
            for msg in self.transcript:
                lines.append(f"\n{msg['role'].upper()}:\n{msg['content']}")
            parts.append("\n".join(lines))
        return "\n\n".join(parts) + "\n"

    def _call(self) -> str:
        return self.collaborators.call_model(self.build_prompt())

    def send_message(self, text: str) -> TurnResult:
        if self.phase != TaskPhase.EXECUTING or self.active_item is None:
            return TurnResult(False, error=f"Cannot send a message while {self.phase.value}",
                              kind=ErrorKind.MALFORMED_COMMAND)
        transcript = self.transcript
        mark = len(transcript)
        transcript.append({"role": "user", "content": text})
        try:
            reply = self._call()
        except CollaboratorError as e:
            del transcript[mark:]
            Log.error(f"Model call failed: {e}")
            return TurnResult(False, error=str(e), kind=ErrorKind.COLLABORATOR_FAILURE)

        files: List[Dict[str, str]] = []
        requested: set = set()
        for _ in range(Config.MAX_FILE_REQUEST_ROUNDS):
            request = detect_file_request(reply)
            if request is None:
                break
            fresh = [f for f in request.files if f not in requested]
            if not fresh:
                Log.debug("File request repeats earlier paths, not re-reading")
                break
            requested.update(fresh)
            outcome = fulfil_file_request(FileRequest(fresh), self.sandbox)
            files.append(outcome)
            transcript.append({"role": "assistant",
                               "content": strip_file_request(reply) + format_file_contents(outcome)})
            Log.info(f"Provided {len(outcome)} file(s) to the model")
            try:
                reply = self._call()
            except CollaboratorError as e:
                Log.error(f"Model call failed: {e}")
                return TurnResult(False, files=files, error=str(e),
                                  kind=ErrorKind.COLLABORATOR_FAILURE)

        results = self.executor.process_response(reply)
        # a request left unanswered (repeat or round limit) stays out of the transcript
        transcript.append({"role": "assistant", "content": strip_file_request(reply)})
        if results:
            transcript.append({"role": "system", "content": format_results(results)})
        return TurnResult(True, reply, results, files)

    def complete_item(self, summary: str) -> StepResult:
        item = self.active_item
        if self.phase != TaskPhase.EXECUTING or item is None:
            return self._wrong_phase("complete an item")
        summary = (summary or "").strip()
        if not summary:
            return self._fail("A summary is required to complete an item",
                              ErrorKind.MALFORMED_COMMAND)
        try:
            self.store.save_summary(item.index, summary)
        except OSError as e:
            return self._fail(f"Failed to save summary: {e}", ErrorKind.IO_ERROR)
        item.status  = TodoStatus.COMPLETED
        item.summary = summary
        self.summaries[item.index] = summary
        self.transcripts.pop(item.index, None)
        Log.success(f"Completed item {item.index + 1}")
        self._activate(self._next_pending(item.index))
        if self.phase == TaskPhase.COMPLETED:
            Log.success("All items completed")
        return self._save_todos() or self._ok()

    def select_item(self, index: int) -> StepResult:
        """Focus *index*. Later summaries are left as they are, even when
        a completed item is reopened."""
        if self.phase not in (TaskPhase.EXECUTING, TaskPhase.COMPLETED):
            return self._wrong_phase("select an item")
        if not (0 <= index < len(self.todos)):
            return self._fail(f"No such item: {index}", ErrorKind.NOT_FOUND)
        self._activate(index)
        return self._save_todos() or self._ok()

    def resume(self) -> StepResult:
        """Rebuild execution state from the project's stored artifacts."""
        todos = self.store.load_todos()
        if not todos:
            return self._fail("No saved todo list to resume", ErrorKind.NOT_FOUND)
        stored = self.store.load_summaries()
        self.global_context = self.store.load_context()
        self.todos     = todos
        self.summaries = {i: e["summary"] for i, e in stored.items() if i < len(todos)}
        for t in self.todos:
            if t.index in self.summaries:
                t.summary = self.summaries[t.index]
        self.session     = None
        self.transcripts = {}
        active = next((t.index for t in todos if t.status == TodoStatus.ACTIVE), None)
        self._activate(active if active is not None else self._next_pending(-1))
        Log.info(f"Resumed task with {len(todos)} items ({len(self.summaries)} completed)")
        return self._ok()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase":          self.phase.value,
            "task":           self.task,
            "clarification":  self.session.to_dict() if self.session else None,
            "global_context": self.global_context,
            "todos":          [t.to_dict() for t in self.todos],
            "active_index":   self.active_index,
            "transcript":     list(self.transcript),
        }

    def display_todos(self) -> str:
        if not self.todos:
            return "No todo items yet"
        lines = []
        for t in self.todos:
            marker = "▶" if t.index == self.active_index else " "
            cat    = f" [{t.category}]" if t.category else ""
            lines.append(f"{marker} {t.icon} {t.index + 1}. {t.description}{cat}")
            if t.summary:
                lines.append(f"      └─ {t.summary}")
        return "\n".join(lines)
