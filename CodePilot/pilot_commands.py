#!/usr/bin/env python3
"""
pilot_commands.py — Command extraction and execution for CodePilot.

The agent proposes file mutations by embedding JSON objects in its reply:

    {"command": "Create", "fileName": "src/app.py", "content": "...", "description": "..."}
    {"command": "Modify", "fileName": "src/app.py", "oldContent": "...", "newContent": "..."}
    {"command": "Delete", "fileName": "old.txt"}

Objects may be bare or inside a ```json fence. Extraction is a single-pass
bracket-balanced scanner (see iter_json_objects) rather than a regex, so
nested objects and braces inside string literals never cause a mis-parse.

Every command yields exactly one CommandResult. A failing command never stops
the ones after it; a batch that fails half-way stays half-applied.
"""
import json
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Iterator, List, Optional, Tuple, Union

from pilot_core import (
    Config, ErrorKind, Log, ProjectSandbox,
    project_lock,
)

# Fence tags whose contents count as structured data. An untagged fence is
# treated the same way; any other tag (python, js, …) is a code sample.
_DATA_FENCE_TAGS = frozenset({"", "json", "json5", "jsonc"})


# =============================================================================
# SCANNER
# =============================================================================

def _object_end(text: str, start: int) -> int:
    """Index one past the '}' that closes the '{' at *start*, or -1."""
    depth, in_str, esc = 0, False, False
    for i in range(start, len(text)):
        c = text[i]
        if in_str:
            if esc:
                esc = False
            elif c == "\\":
                esc = True
            elif c == '"':
                in_str = False
            continue
        if c == '"':
            in_str = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


_FENCE_TAG_RE = re.compile(r"[ \t]*([\w+.-]*)")


def _fence_at(text: str, i: int) -> Optional[Tuple[str, int, int]]:
    """If a ``` marker starts a line at *i*, return (tag, tag_end, end_of_line)."""
    if not text.startswith("```", i):
        return None
    line_start = text.rfind("\n", 0, i) + 1
    if text[line_start:i].strip():
        return None
    eol = text.find("\n", i)
    if eol == -1:
        eol = len(text)
    m = _FENCE_TAG_RE.match(text, i + 3, eol)
    return m.group(1).lower(), m.end(), eol


def iter_json_objects(
    text: str,
    descend: Optional[Callable[[Dict[str, Any]], bool]] = None,
) -> Iterator[Tuple[int, int, Dict[str, Any]]]:
    """Yield (start, end, obj) for every JSON object embedded in *text*.

    Objects inside fences tagged with a non-data language are ignored. When a
    candidate fails to parse (or never closes) the scanner skips its opening
    brace and carries on, so an inner object can still be found. After a
    successful parse it jumps past the object unless ``descend(obj)`` is true.
    """
    i, n = 0, len(text)
    fence_tag: Optional[str] = None          # None → not inside a fence
    while i < n:
        c = text[i]
        if c == "`":
            fence = _fence_at(text, i)
            if fence:
                tag, tag_end, eol = fence
                if fence_tag is not None:
                    fence_tag, i = None, eol
                elif text[tag_end:eol].strip():
                    # ```json {...} ``` on one line is prose, not a fence
                    i = tag_end
                else:
                    fence_tag, i = tag, eol
                continue
        if c == "{" and (fence_tag is None or fence_tag in _DATA_FENCE_TAGS):
            end = _object_end(text, i)
            if end == -1:
                Log.debug(f"Unbalanced brace at offset {i}, skipping")
                i += 1
                continue
            candidate = text[i:end]
            try:
                obj = json.loads(candidate, strict=False)
            except ValueError:
                Log.debug(f"Invalid JSON found, skipping: {candidate[:80]}")
                i += 1
                continue
            if isinstance(obj, dict):
                yield i, end, obj
                if descend is None or not descend(obj):
                    i = end
                    continue
            i += 1
            continue
        i += 1


def extract_json(text: str, required_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """First embedded object (optionally the first having *required_key*)."""
    for _, _, obj in iter_json_objects(text, descend=(
            (lambda o: required_key not in o) if required_key else None)):
        if required_key is None or required_key in obj:
            return obj
    return None


# =============================================================================
# COMMAND TYPES
# =============================================================================

@dataclass
class CreateCommand:
    NAME: ClassVar[str] = "Create"
    file_name:   Optional[str]
    content:     Any
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"command": self.NAME, "fileName": self.file_name, "content": self.content}
        if self.description is not None:
            d["description"] = self.description
        return d


@dataclass
class ModifyCommand:
    NAME: ClassVar[str] = "Modify"
    file_name:   Optional[str]
    old_content: Any
    new_content: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.NAME, "fileName": self.file_name,
                "oldContent": self.old_content, "newContent": self.new_content}


@dataclass
class DeleteCommand:
    NAME: ClassVar[str] = "Delete"
    file_name: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"command": self.NAME, "fileName": self.file_name}


@dataclass
class InvalidCommand:
    """An object that carried a `command` field naming no known kind."""
    name: str
    raw:  Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


Command = Union[CreateCommand, ModifyCommand, DeleteCommand, InvalidCommand]


def command_from_dict(data: Dict[str, Any]) -> Command:
    name = data.get("command")
    if name == CreateCommand.NAME:
        return CreateCommand(data.get("fileName"), data.get("content"), data.get("description"))
    if name == ModifyCommand.NAME:
        return ModifyCommand(data.get("fileName"), data.get("oldContent"), data.get("newContent"))
    if name == DeleteCommand.NAME:
        return DeleteCommand(data.get("fileName"))
    return InvalidCommand(str(name), data)


def parse_commands(text: str) -> List[Command]:
    """Every command object in *text*, in order of appearance. Pure."""
    if not text:
        return []
    return [command_from_dict(obj)
            for _, _, obj in iter_json_objects(text, descend=lambda o: "command" not in o)
            if obj.get("command")]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class CommandResult:
    command: Command
    success: bool
    error:   str                 = ""
    kind:    Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"command": self.command.to_dict(), "success": self.success}
        if not self.success:
            d["error"] = self.error
            d["kind"]  = self.kind.value if self.kind else None
        return d


def _describe(command: Command) -> str:
    if isinstance(command, InvalidCommand):
        return command.name
    return f"{command.NAME} {command.file_name or '?'}"


def format_results(results: List[CommandResult]) -> str:
    """Plain-text report fed back to the agent after a batch."""
    if not results:
        return ""
    lines = ["COMMAND RESULTS:"]
    for r in results:
        lines.append(f"- {_describe(r.command)}: "
                     + ("ok" if r.success else f"FAILED ({r.error})"))
    return "\n".join(lines)


# =============================================================================
# BACKGROUND DESCRIPTIONS
# =============================================================================

class BackgroundDescriber:
    """Fire-and-forget description generation.

    *generate* is called with the file's relative path on a worker thread.
    Its failure is logged and never reaches the command that scheduled it.
    """

    def __init__(self, generate: Callable[[str], Any], max_workers: int = 1):
        self._generate = generate
        self._pool     = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="describe")
        self._pending: List[Future] = []
        self._lock     = threading.Lock()

    def schedule(self, file_name: str) -> Optional[Future]:
        if not Config.ENABLE_DESCRIPTIONS:
            return None
        fut = self._pool.submit(self._generate, file_name)
        fut.add_done_callback(lambda f, name=file_name: self._on_done(name, f))
        with self._lock:
            self._pending = [p for p in self._pending if not p.done()] + [fut]
        return fut

    def _on_done(self, file_name: str, fut: Future):
        exc = fut.exception()
        if exc is not None:
            Log.warning(f"Description generation failed for {file_name}: {exc}")
        else:
            Log.debug(f"Description updated for {file_name}")

    def drain(self, timeout: Optional[float] = None):
        """Block until every scheduled description has finished."""
        with self._lock:
            pending, self._pending = self._pending, []
        for fut in pending:
            try:
                fut.result(timeout=timeout)
            except Exception:
                pass  # already logged by _on_done

    def shutdown(self):
        self._pool.shutdown(wait=True)


# =============================================================================
# EXECUTOR
# =============================================================================

def _malformed(command: Command, msg: str) -> CommandResult:
    return CommandResult(command, False, msg, ErrorKind.MALFORMED_COMMAND)


class CommandExecutor:
    def __init__(self, sandbox: ProjectSandbox,
                 describer: Optional[BackgroundDescriber] = None):
        self.sandbox   = sandbox
        self.describer = describer

    def execute(self, command: Command) -> CommandResult:
        try:
            if isinstance(command, CreateCommand):
                return self._create(command)
            if isinstance(command, ModifyCommand):
                return self._modify(command)
            if isinstance(command, DeleteCommand):
                return self._delete(command)
            if isinstance(command, InvalidCommand):
                return _malformed(command, f"Unknown command: {command.name}")
        except Exception as e:
            Log.error(f"Error executing command {_describe(command)}: {e}")
            return CommandResult(command, False, str(e), ErrorKind.IO_ERROR)
        raise TypeError(f"Unhandled command type: {type(command).__name__}")

    def _schedule_description(self, file_name: str):
        if self.describer is None:
            return
        try:
            self.describer.schedule(file_name)
        except RuntimeError as e:
            # pool already shut down
            Log.warning(f"Could not schedule description for {file_name}: {e}")

    def _reserved(self, cmd: Command) -> Optional[CommandResult]:
        """Refuse paths under the pilot dir; only TaskStore writes there."""
        parts = [p for p in cmd.file_name.replace("\\", "/").split("/") if p not in ("", ".")]
        if parts and parts[0].lower() == Config.PILOT_DIR.lower():
            return CommandResult(cmd, False, f"Path is reserved for CodePilot state: {cmd.file_name}",
                                 ErrorKind.SANDBOX_VIOLATION)
        return None

    def _create(self, cmd: CreateCommand) -> CommandResult:
        if not cmd.file_name or not isinstance(cmd.file_name, str) or not isinstance(cmd.content, str):
            return _malformed(cmd, "Missing fileName or content in Create command")
        reserved = self._reserved(cmd)
        if reserved:
            return reserved
        op = self.sandbox.write_file(cmd.file_name, cmd.content)
        if not op.success:
            return CommandResult(cmd, False, op.error, op.kind)
        Log.success(f"Created {cmd.file_name}")
        if cmd.description:
            self._schedule_description(cmd.file_name)
        return CommandResult(cmd, True)

    def _modify(self, cmd: ModifyCommand) -> CommandResult:
        if (not cmd.file_name or not isinstance(cmd.file_name, str)
                or not cmd.old_content or not isinstance(cmd.old_content, str)
                or not isinstance(cmd.new_content, str)):
            return _malformed(cmd, "Missing required parameters in Modify command")
        reserved = self._reserved(cmd)
        if reserved:
            return reserved
        read = self.sandbox.read_file(cmd.file_name, strict=True)
        if not read.success:
            return CommandResult(cmd, False, read.error, read.kind)
        if cmd.old_content not in read.content:
            return CommandResult(cmd, False, "Pattern not found in file",
                                 ErrorKind.PATTERN_NOT_FOUND)
        updated = read.content.replace(cmd.old_content, cmd.new_content, 1)
        op = self.sandbox.write_file(cmd.file_name, updated)
        if not op.success:
            return CommandResult(cmd, False, op.error, op.kind)
        Log.success(f"Modified {cmd.file_name}")
        self._schedule_description(cmd.file_name)
        return CommandResult(cmd, True)

    def _delete(self, cmd: DeleteCommand) -> CommandResult:
        if not cmd.file_name or not isinstance(cmd.file_name, str):
            return _malformed(cmd, "Missing fileName in Delete command")
        reserved = self._reserved(cmd)
        if reserved:
            return reserved
        op = self.sandbox.delete_file(cmd.file_name)
        if not op.success:
            return CommandResult(cmd, False, op.error, op.kind)
        Log.success(f"Deleted {cmd.file_name}")
        return CommandResult(cmd, True)

    def process_response(self, text: str) -> List[CommandResult]:
        """Parse *text* and run each command in order, one result per command."""
        commands = parse_commands(text)
        if not commands:
            return []
        results: List[CommandResult] = []
        with project_lock(self.sandbox):
            for command in commands:
                result = self.execute(command)
                if not result.success:
                    Log.warning(f"{_describe(command)} failed: {result.error}")
                results.append(result)
        return results
