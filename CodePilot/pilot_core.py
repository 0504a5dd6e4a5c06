#!/usr/bin/env python3
"""
pilot_core.py — Foundation layer for CodePilot.

Contains: .env loader, Config, Colors/Log, the error vocabulary shared by every
layer, the project sandbox (path resolution + sandbox-aware file I/O) and the
per-project lock registry.

Dependency graph (no cycles):
    pilot_core
        ↑
    pilot_commands, pilot_files
        ↑
    pilot_llm
        ↑
    pilot_tasks
        ↑
    pilot_main, pilot_web
"""
import json
import os
import posixpath
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import colorama

colorama.init()

VERSION = "1.4.0"


# =============================================================================
# .ENV FILE LOADER
# Loaded before Config so env-var defaults pick up the values.
# Searches: <script dir>/.env, then cwd/.env. Does NOT override existing vars.
# =============================================================================

def _load_dotenv():
    """Load key=value pairs from a .env file into os.environ.

    Checks (in order):
      1. Directory containing this script
      2. Current working directory
    Existing environment variables are never overridden.
    Values may be optionally quoted with single or double quotes.
    """
    candidates = [
        Path(__file__).parent / ".env",
        Path.cwd() / ".env",
    ]
    for env_file in candidates:
        if not env_file.exists():
            continue
        try:
            for raw in env_file.read_text(encoding="utf-8").splitlines():
                line = raw.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, val = line.partition("=")
                key = key.strip()
                val = val.strip()
                if len(val) >= 2 and val[0] in ('"', "'") and val[-1] == val[0]:
                    val = val[1:-1]
                if key and key not in os.environ:
                    os.environ[key] = val
        except OSError as e:
            # Log class not yet defined
            print(f"[!] Could not read {env_file}: {e}")
        break


_load_dotenv()


# =============================================================================
# CONFIGURATION
# =============================================================================

class Config:
    """Central config. Every value is overridable via environment variable."""

    # LLM
    LLM_URL         = os.getenv("LLM_URL",         "https://openrouter.ai/api/v1/chat/completions")
    LLM_API_KEY     = os.getenv("LLM_API_KEY",     "")
    LLM_MODEL       = os.getenv("LLM_MODEL",       "deepseek/deepseek-chat-v3-0324:free")
    MAX_TOKENS      = int(os.getenv("LLM_MAX_TOKENS",    "2000"))
    TEMPERATURE     = float(os.getenv("LLM_TEMPERATURE", "0.0"))

    # Retry / timeouts
    LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "3"))
    LLM_RETRY_DELAY = float(os.getenv("LLM_RETRY_DELAY", "2.0"))
    LLM_TIMEOUT     = int(os.getenv("LLM_TIMEOUT",     "120"))

    # Project
    PROJECT_ROOT = os.getenv("PROJECT_ROOT", "")
    PILOT_DIR    = os.getenv("PILOT_DIR",    ".codepilot")

    # Limits
    MAX_FILE_READ           = int(os.getenv("MAX_FILE_READ",           "1000000"))
    MAX_FILE_REQUEST_ROUNDS = int(os.getenv("MAX_FILE_REQUEST_ROUNDS", "3"))
    FILE_READ_WORKERS       = int(os.getenv("FILE_READ_WORKERS",       "4"))

    # Feature flags
    ENABLE_DESCRIPTIONS = os.getenv("ENABLE_DESCRIPTIONS", "true").lower() == "true"
    DEBUG               = os.getenv("PILOT_DEBUG",         "false").lower() == "true"

    # Binary extensions, never read or written as text
    BINARY_EXTS = frozenset({
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".pdf", ".zip",
        ".gz", ".tar", ".exe", ".dll", ".so", ".pyc", ".bin", ".dat",
        ".mp4", ".mp3", ".avi", ".mov", ".iso", ".dmg",
    })

    @classmethod
    def init(cls, root: Optional[Path] = None):
        cls._validate()
        if root is not None:
            (Path(root) / cls.PILOT_DIR).mkdir(parents=True, exist_ok=True)

    @classmethod
    def _validate(cls):
        if cls.LLM_MAX_RETRIES < 1:
            raise ValueError("LLM_MAX_RETRIES must be >= 1")
        if cls.MAX_FILE_REQUEST_ROUNDS < 1:
            raise ValueError("MAX_FILE_REQUEST_ROUNDS must be >= 1")
        if cls.FILE_READ_WORKERS < 1:
            raise ValueError("FILE_READ_WORKERS must be >= 1")
        if not cls.PILOT_DIR or "/" in cls.PILOT_DIR or "\\" in cls.PILOT_DIR:
            raise ValueError(f"Invalid PILOT_DIR: {cls.PILOT_DIR!r}")


# =============================================================================
# COLORS & LOGGING
# =============================================================================

class Colors:
    RESET   = "\033[0m"
    BOLD    = "\033[1m"
    RED     = "\033[38;5;196m"
    GREEN   = "\033[38;5;40m"
    YELLOW  = "\033[38;5;214m"
    BLUE    = "\033[38;5;75m"
    CYAN    = "\033[38;5;80m"
    GRAY    = "\033[38;5;250m"


def colored(text: str, color: str, bold: bool = False) -> str:
    return f"{Colors.BOLD if bold else ''}{color}{text}{Colors.RESET}"


# Log silence is thread-local: the web app silences its request threads only.
_log_local = threading.local()


class Log:
    """Coloured logger. Call Log.set_silent(True) in service mode.
    Silent state is per-thread."""

    @classmethod
    def set_silent(cls, silent: bool):
        _log_local.silent = silent

    @staticmethod
    def _is_silent() -> bool:
        return getattr(_log_local, "silent", False)

    @staticmethod
    def _print(prefix: str, msg: str, color: str):
        if not Log._is_silent():
            print(colored(f"{prefix} {msg}", color))

    @staticmethod
    def info(msg: str):    Log._print("[INFO]", msg, Colors.CYAN)
    @staticmethod
    def success(msg: str): Log._print("[✓]",    msg, Colors.GREEN)
    @staticmethod
    def warning(msg: str): Log._print("[!]",    msg, Colors.YELLOW)
    @staticmethod
    def error(msg: str):   Log._print("[✗]",    msg, Colors.RED)
    @staticmethod
    def task(msg: str):    Log._print("[🎯]",   msg, Colors.BLUE)
    @staticmethod
    def debug(msg: str):
        if Config.DEBUG:
            Log._print("[DEBUG]", msg, Colors.GRAY)


# =============================================================================
# UTILITIES
# =============================================================================

def truncate_output(text: str, max_length: int, label: str = "output") -> str:
    if len(text) <= max_length:
        return text
    half        = max_length // 2
    total_lines = text.count("\n") + 1
    return (text[:half]
            + f"\n\n... [TRUNCATED {label}: {len(text) - max_length} chars,"
              f" {total_lines} total lines] ...\n\n"
            + text[-(max_length - half):])


_THINK_RE = re.compile(r'<think>(.*?)</think>', re.DOTALL | re.IGNORECASE)


def strip_thinking(content: str) -> Tuple[str, str]:
    """Remove <think>…</think> blocks. Returns (clean_content, thinking_text)."""
    if '<think>' not in content.lower():
        return content, ''
    parts = _THINK_RE.findall(content)
    return _THINK_RE.sub('', content).strip(), '\n'.join(parts)


def _atomic_write(path: Path, data: Union[str, Dict[str, Any], list]):
    """Write text (or JSON for dicts/lists) atomically via a .tmp sibling."""
    text = data if isinstance(data, str) else json.dumps(data, indent=2, default=str)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    # newline="" keeps the caller's line endings byte for byte
    with open(tmp, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    os.replace(str(tmp), str(path))


# =============================================================================
# ERRORS
# =============================================================================

class ErrorKind(Enum):
    SANDBOX_VIOLATION    = "sandbox_violation"
    NOT_FOUND            = "not_found"
    NO_PROJECT           = "no_project"
    MALFORMED_COMMAND    = "malformed_command"
    PATTERN_NOT_FOUND    = "pattern_not_found"
    COLLABORATOR_FAILURE = "collaborator_failure"
    IO_ERROR             = "io_error"


class ProjectNotSetError(RuntimeError):
    """Raised where an operation cannot even start without a project root."""

    def __init__(self, message: str = "Project folder not set"):
        super().__init__(message)


# =============================================================================
# SANDBOX
# =============================================================================

@dataclass
class Resolution:
    ok:    bool
    path:  Optional[Path]      = None
    kind:  Optional[ErrorKind] = None
    error: str                 = ""


def _norm(p: str) -> str:
    return posixpath.normpath(p.replace("\\", "/"))


def resolve_path(root: Optional[Union[str, Path]], relative_path: str) -> Resolution:
    """Join *relative_path* onto *root* and check the result stays under it.

    Purely textual: nothing touches the filesystem. Any '..' segment or
    absolute path is refused even when it would collapse back inside root.
    """
    if not root:
        return Resolution(False, kind=ErrorKind.NO_PROJECT, error="Project directory not set")
    if not isinstance(relative_path, str) or not relative_path.strip():
        return Resolution(False, kind=ErrorKind.MALFORMED_COMMAND, error="Empty path")

    rel = relative_path.replace("\\", "/")
    if ".." in rel.split("/"):
        return Resolution(False, kind=ErrorKind.SANDBOX_VIOLATION,
                          error=f"Path outside project folder: {relative_path}")
    if rel.startswith("/") or re.match(r"^[A-Za-z]:", rel):
        return Resolution(False, kind=ErrorKind.SANDBOX_VIOLATION,
                          error=f"Absolute paths are not allowed: {relative_path}")

    norm_root = _norm(str(root))
    joined    = _norm(posixpath.join(norm_root, rel))
    prefix    = norm_root if norm_root.endswith("/") else norm_root + "/"
    if joined != norm_root and not joined.startswith(prefix):
        return Resolution(False, kind=ErrorKind.SANDBOX_VIOLATION,
                          error=f"Path outside project folder: {relative_path}")
    return Resolution(True, path=Path(joined))


@dataclass
class FileOp:
    success: bool
    content: Optional[str]       = None
    error:   str                 = ""
    kind:    Optional[ErrorKind] = None
    path:    str                 = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success}
        if self.path:              d["path"]    = self.path
        if self.content is not None: d["content"] = self.content
        if not self.success:
            d["error"] = self.error
            d["kind"]  = self.kind.value if self.kind else None
        return d


@dataclass(frozen=True)
class ProjectSandbox:
    """The only filesystem view the rest of the core may touch."""
    root: Optional[Path] = None

    @classmethod
    def open(cls, root: Optional[Union[str, Path]]) -> "ProjectSandbox":
        if not root:
            return cls(None)
        return cls(Path(root).expanduser().resolve())

    @property
    def pilot_dir(self) -> Path:
        if self.root is None:
            raise ProjectNotSetError()
        return self.root / Config.PILOT_DIR

    def resolve(self, relative_path: str) -> Resolution:
        return resolve_path(self.root, relative_path)

    def _fail(self, res: Resolution, path: str) -> FileOp:
        return FileOp(False, error=res.error, kind=res.kind, path=path)

    def read_file(self, relative_path: str, strict: bool = False) -> FileOp:
        """Read a project file as text with its line endings untouched.

        Undecodable bytes are replaced unless *strict*, in which case the read
        fails with IO_ERROR rather than hand back lossy text.
        """
        res = self.resolve(relative_path)
        if not res.ok:
            return self._fail(res, relative_path)
        fp = res.path
        if not fp.exists():
            return FileOp(False, error=f"File not found: {relative_path}",
                          kind=ErrorKind.NOT_FOUND, path=relative_path)
        if not fp.is_file():
            return FileOp(False, error=f"Not a file: {relative_path}",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        if fp.suffix.lower() in Config.BINARY_EXTS:
            return FileOp(False, error="Cannot read binary file",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        try:
            with open(fp, encoding="utf-8", errors="strict" if strict else "replace",
                      newline="") as f:
                content = f.read()
        except UnicodeDecodeError:
            return FileOp(False, error=f"Not valid UTF-8 text: {relative_path}",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        except OSError as e:
            return FileOp(False, error=str(e), kind=ErrorKind.IO_ERROR, path=relative_path)
        return FileOp(True, content=content, path=relative_path)

    def write_file(self, relative_path: str, content: str) -> FileOp:
        res = self.resolve(relative_path)
        if not res.ok:
            return self._fail(res, relative_path)
        fp = res.path
        if fp.suffix.lower() in Config.BINARY_EXTS:
            return FileOp(False, error="Cannot write binary file",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        if fp.is_dir():
            return FileOp(False, error=f"Is a directory: {relative_path}",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        try:
            _atomic_write(fp, content)
        except OSError as e:
            return FileOp(False, error=str(e), kind=ErrorKind.IO_ERROR, path=relative_path)
        return FileOp(True, path=relative_path)

    def delete_file(self, relative_path: str) -> FileOp:
        res = self.resolve(relative_path)
        if not res.ok:
            return self._fail(res, relative_path)
        fp = res.path
        if not fp.exists():
            return FileOp(False, error=f"File not found: {relative_path}",
                          kind=ErrorKind.NOT_FOUND, path=relative_path)
        if not fp.is_file():
            return FileOp(False, error=f"Not a file: {relative_path}",
                          kind=ErrorKind.IO_ERROR, path=relative_path)
        try:
            fp.unlink()
        except OSError as e:
            return FileOp(False, error=str(e), kind=ErrorKind.IO_ERROR, path=relative_path)
        return FileOp(True, path=relative_path)


# =============================================================================
# PER-PROJECT LOCKS
# =============================================================================

_locks_guard = threading.Lock()
_project_locks: Dict[str, threading.Lock] = {}


def project_lock(sandbox: ProjectSandbox) -> threading.Lock:
    """One mutex per project root; responses for a project run one at a time."""
    key = str(sandbox.root) if sandbox.root else ""
    with _locks_guard:
        lock = _project_locks.get(key)
        if lock is None:
            lock = _project_locks[key] = threading.Lock()
        return lock
