#!/usr/bin/env python3
"""
pilot_llm.py — LLM client, prompt templates and the model-backed collaborators.

Everything here talks to an OpenAI-compatible chat-completions endpoint
through requests. The orchestrator only ever sees the collaborator callables
(generate_questions, summarize_answers, generate_todo_list, call_model) and
FileDescriber; any failure surfaces as CollaboratorError.
"""
import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from pilot_core import (
    Config, Log, ProjectSandbox,
    _atomic_write, strip_thinking, truncate_output,
)
from pilot_commands import extract_json


class CollaboratorError(RuntimeError):
    """A model-backed collaborator could not produce its result."""


# =============================================================================
# PROMPTS
# =============================================================================

FILE_OPERATIONS_PROMPT = """You are a careful software engineer working inside the user's project folder.

## READING FILES
When you need to see a file, end your response with a file request:
{"files": ["path/to/file.ext"]}
Several files at once:
{"files": ["src/a.py", "src/b.py", "README.md"]}
The file contents are returned to you behind the scenes. Never print
"## FILE CONTENTS" sections yourself.

## CHANGING FILES
Embed one JSON command per change, bare or inside a ```json block:

Create (or overwrite) a file:
{"command": "Create", "fileName": "src/app.py", "content": "...", "description": "one line"}

Replace the FIRST exact occurrence of oldContent:
{"command": "Modify", "fileName": "src/app.py", "oldContent": "...", "newContent": "..."}

Delete a file:
{"command": "Delete", "fileName": "old.txt"}

## RULES
- Paths are relative to the project folder. Never use '..' or absolute paths.
- oldContent must match the file byte-for-byte, whitespace included.
  Request the file first if you are unsure of its exact contents.
- Commands run in the order written; later ones see earlier ones' effects.
- Focus on the CURRENT item only. Earlier items are summarised below; do not redo them.
- Leave comments in the files you write: each item is a separate conversation
  and your files are how later items learn what you did.
"""

CLARIFICATION_PROMPT = """You are a highly skilled assistant for task definition.
Your role is to understand the user's task through clarifying questions.

The user has provided the following task:

"{task}"

Ask only what you genuinely need to know about technical scope, deliverables,
existing resources, and constraints. Ask at most {max_questions} questions.

Respond with JSON only:
{{"questions": [{{"question": "...", "hint": "example answer or guidance"}}]}}
Return {{"questions": []}} if the task is already clear.
"""

CONTEXT_PROMPT = """You are preparing the global context document for a software task.
It will be given as background to every later step, so it must be complete and
self-contained.

TASK:
{task}

CLARIFICATION:
{conversation}

Write a concise document covering: goal, scope, technical decisions, constraints,
deliverables, and open assumptions. Plain text, no preamble.
"""

TODO_PROMPT = """You are a task breakdown specialist. Break the project below into
broad, high-level, ordered tasks, grouped into logical sections. Each task
becomes its own conversation, so each should cover several related steps.

GLOBAL CONTEXT:
{context}

Respond with JSON only:
{{"title": "Project title",
  "sections": [{{"title": "Section", "tasks": [{{"title": "Task", "description": "What it covers"}}]}}]}}
"""

DESCRIPTION_PROMPT = """Please provide a concise summary (1-5 sentences) of this file, focusing on
its purpose, key functionality, and how it might be used by other components.
Include the most important public functions or data structures if applicable.

File: {path}

File content:
{content}
"""

_DEFAULT_QUESTION = {
    "question": "Could you provide any additional details that might help with your task?",
    "hint":     "Any specific requirements, technologies, or constraints you have in mind.",
}


# =============================================================================
# LLM CLIENT
# =============================================================================

class LLMClient:
    _HEADERS: Dict[str, str] = {"Content-Type": "application/json"}

    @classmethod
    def _headers(cls) -> Dict[str, str]:
        return {**cls._HEADERS, "Authorization": f"Bearer {Config.LLM_API_KEY}"}

    @staticmethod
    def validate_connection() -> Optional[str]:
        try:
            r = requests.post(
                Config.LLM_URL,
                json={"messages": [{"role": "user", "content": "test"}], "max_tokens": 1,
                      "model": Config.LLM_MODEL},
                headers=LLMClient._headers(), timeout=10,
            )
            if r.status_code == 200: return None
            if r.status_code == 401: return "Authentication failed"
            return f"HTTP {r.status_code}"
        except requests.ConnectionError:
            return f"Cannot connect to {Config.LLM_URL}"
        except requests.RequestException as e:
            return f"Connection error: {e}"

    @staticmethod
    def _build_payload(messages: List[Dict[str, Any]], stream: bool,
                       temperature: Optional[float],
                       max_tokens: Optional[int]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages":    messages,
            "temperature": Config.TEMPERATURE if temperature is None else temperature,
            "stream":      stream,
        }
        if Config.LLM_MODEL: payload["model"] = Config.LLM_MODEL
        tokens = Config.MAX_TOKENS if max_tokens is None else max_tokens
        if tokens > 0:       payload["max_tokens"] = tokens
        return payload

    @classmethod
    def call(cls, messages: List[Dict[str, Any]],
             stream_callback: Optional[Callable[[str], None]] = None,
             temperature: Optional[float] = None,
             max_tokens: Optional[int] = None) -> Dict[str, Any]:
        """Returns {"content": ...} or {"error": ...}; never raises."""
        stream     = stream_callback is not None
        payload    = cls._build_payload(messages, stream, temperature, max_tokens)
        last_error: Optional[str] = None
        for attempt in range(1, Config.LLM_MAX_RETRIES + 1):
            try:
                resp = requests.post(
                    Config.LLM_URL, json=payload, headers=cls._headers(),
                    stream=stream, timeout=Config.LLM_TIMEOUT,
                )
                if resp.status_code in (429, 500, 502, 503):
                    last_error = f"HTTP {resp.status_code}"
                    Log.warning(f"LLM returned {resp.status_code} (attempt {attempt})")
                    if attempt < Config.LLM_MAX_RETRIES:
                        time.sleep(Config.LLM_RETRY_DELAY * attempt)
                    continue
                resp.raise_for_status()
                if stream:
                    content = cls._parse_stream(resp, stream_callback)
                else:
                    content = resp.json()["choices"][0]["message"]["content"] or ""
                content, _ = strip_thinking(content)
                return {"content": content}
            except requests.ConnectionError as e:
                last_error = str(e)
                Log.warning(f"Connection lost (attempt {attempt}): {e}")
            except requests.Timeout as e:
                last_error = str(e)
                Log.warning(f"Request timed out (attempt {attempt}): {e}")
            except requests.RequestException as e:
                last_error = str(e)
                Log.warning(f"LLM error (attempt {attempt}): {e}")
            except (KeyError, IndexError, TypeError, ValueError) as e:
                return {"error": f"Invalid response from model: {e}"}
            if attempt < Config.LLM_MAX_RETRIES:
                time.sleep(Config.LLM_RETRY_DELAY * attempt)
        return {"error": f"LLM failed after {Config.LLM_MAX_RETRIES} attempts: {last_error}"}

    @staticmethod
    def _parse_stream(resp, stream_callback: Callable[[str], None]) -> str:
        content = ""
        resp.encoding = "utf-8"
        for line in resp.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data: "): continue
            data = line[6:].strip()
            if data == "[DONE]": break
            try:
                chunk = json.loads(data)
            except ValueError:
                continue
            choices = chunk.get("choices") or []
            if not choices: continue
            token = (choices[0].get("delta") or {}).get("content") or ""
            if token:
                content += token
                stream_callback(token)
        return content

    @classmethod
    def complete(cls, prompt: str, system: Optional[str] = None,
                 temperature: Optional[float] = None,
                 max_tokens: Optional[int] = None) -> str:
        """Single-prompt completion. Raises CollaboratorError on failure."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        result = cls.call(messages, temperature=temperature, max_tokens=max_tokens)
        if "error" in result:
            raise CollaboratorError(result["error"])
        text = result["content"].strip()
        if not text:
            raise CollaboratorError("Invalid response from model: empty reply")
        return text


# =============================================================================
# COLLABORATORS
# =============================================================================

def format_conversation(questions: List[str], answers: List[str]) -> str:
    if not questions:
        return "No clarification questions were needed."
    lines = []
    for i, q in enumerate(questions):
        ans = answers[i] if i < len(answers) and answers[i] else "unsure/skip"
        lines.append(f"Question {i + 1}: {q}\nAnswer {i + 1}: {ans}")
    return "\n\n".join(lines)


def flatten_todo_payload(data: Any) -> List[Dict[str, str]]:
    """Accepts the sections layout, a {category: [tasks]} mapping, or a flat list."""
    items: List[Dict[str, str]] = []

    def _add(task: Any, category: str):
        if isinstance(task, str):
            desc = task.strip()
        elif isinstance(task, dict):
            title = str(task.get("title") or task.get("task") or "").strip()
            body  = str(task.get("description") or "").strip()
            desc  = f"{title}: {body}" if title and body else (title or body)
        else:
            return
        if desc:
            items.append({"description": desc, "category": category})

    if isinstance(data, dict) and isinstance(data.get("sections"), list):
        for section in data["sections"]:
            if not isinstance(section, dict):
                continue
            for task in section.get("tasks") or []:
                _add(task, str(section.get("title") or ""))
    elif isinstance(data, dict) and isinstance(data.get("tasks"), list):
        for task in data["tasks"]:
            _add(task, "")
    elif isinstance(data, dict):
        for category, tasks in data.items():
            if isinstance(tasks, list):
                for task in tasks:
                    _add(task, str(category))
    elif isinstance(data, list):
        for task in data:
            _add(task, "")
    return items


class LLMCollaborators:
    """Model-backed implementations of the orchestrator's collaborators."""

    def __init__(self, client: type = LLMClient, max_questions: int = 5):
        self.client        = client
        self.max_questions = max_questions

    def generate_questions(self, task: str) -> List[Dict[str, str]]:
        reply = self.client.complete(
            CLARIFICATION_PROMPT.format(task=task, max_questions=self.max_questions))
        data = extract_json(reply, "questions")
        if data is None or not isinstance(data.get("questions"), list):
            raise CollaboratorError("Could not parse questions from model response")
        out = []
        for q in data["questions"][:self.max_questions]:
            if isinstance(q, str) and q.strip():
                out.append({"question": q.strip(), "hint": ""})
            elif isinstance(q, dict) and str(q.get("question") or "").strip():
                out.append({"question": str(q["question"]).strip(),
                            "hint":     str(q.get("hint") or "").strip()})
        if not out and data.get("needsMoreQuestions") is True:
            out.append(dict(_DEFAULT_QUESTION))
        return out

    def summarize_answers(self, task: str, questions: List[str], answers: List[str]) -> str:
        return self.client.complete(
            CONTEXT_PROMPT.format(task=task, conversation=format_conversation(questions, answers)))

    def generate_todo_list(self, context: str) -> List[Dict[str, str]]:
        reply = self.client.complete(TODO_PROMPT.format(context=context))
        data  = extract_json(reply)
        items = flatten_todo_payload(data) if data is not None else []
        if not items:
            raise CollaboratorError("Could not parse a todo list from model response")
        return items

    def call_model(self, prompt: str) -> str:
        return self.client.complete(prompt)


# =============================================================================
# FILE DESCRIPTIONS
# =============================================================================

class FileDescriber:
    """Generates and caches one short description per project file."""

    def __init__(self, sandbox: ProjectSandbox, client: type = LLMClient):
        self.sandbox = sandbox
        self.client  = client
        self._lock   = threading.Lock()

    @property
    def _file(self) -> Path:
        return self.sandbox.pilot_dir / "descriptions.json"

    def all(self) -> Dict[str, Dict[str, str]]:
        if self.sandbox.root is None or not self._file.exists():
            return {}
        try:
            return json.loads(self._file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            Log.error(f"Failed to load file descriptions: {e}")
            return {}

    def get(self, rel: str) -> str:
        return (self.all().get(rel) or {}).get("description", "")

    def generate(self, rel: str) -> str:
        if self.sandbox.root is None:
            raise CollaboratorError("Project directory not set")
        read = self.sandbox.read_file(rel)
        if not read.success:
            raise CollaboratorError(read.error)
        description = self.client.complete(
            DESCRIPTION_PROMPT.format(path=rel, content=truncate_output(read.content, 20000, rel)),
            max_tokens=300,
        )
        with self._lock:
            data = self.all()
            data[rel] = {"description": description,
                         "updated":     datetime.now().isoformat()}
            _atomic_write(self._file, data)
        return description
