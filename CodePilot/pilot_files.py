#!/usr/bin/env python3
"""
pilot_files.py — File requests: the agent asks to see project files.

The agent ends a reply with

    {"files": ["src/app.py", "README.md"]}

and the host answers by stripping that request from the visible text and
appending a "## FILE CONTENTS" section, so the agent's next turn sees the
contents inline instead of the request syntax.
"""
import json
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

from pilot_core import (
    Config, ErrorKind, Log, ProjectNotSetError, ProjectSandbox,
    truncate_output,
)

_FILE_REQUEST_RE = re.compile(r'\{\s*"files"\s*:\s*\[(.*?)\]\s*\}', re.DOTALL)

# Extension → fence language tag. Anything else renders as a plain paragraph.
_FENCE_LANGS = {
    ".js": "js", ".jsx": "jsx", ".ts": "ts", ".tsx": "tsx",
    ".py": "py", ".java": "java", ".c": "c", ".cpp": "cpp", ".h": "h", ".cs": "cs",
    ".html": "html", ".css": "css", ".scss": "scss",
    ".json": "json", ".xml": "xml", ".yaml": "yaml", ".yml": "yml",
    ".md": "md", ".sh": "sh",
}

SECURITY_VIOLATION_MSG = "Error: Security violation - cannot access files outside project folder"


@dataclass
class FileRequest:
    files: List[str] = field(default_factory=list)


def detect_file_request(text: str) -> Optional[FileRequest]:
    """First {"files": [...]} in *text*, or None when absent or empty."""
    if not text:
        return None
    m = _FILE_REQUEST_RE.search(text)
    if not m:
        return None
    try:
        data = json.loads(m.group(0))
    except ValueError as e:
        Log.debug(f"Error detecting file request: {e}")
        return None
    files = data.get("files")
    if not isinstance(files, list):
        return None
    paths = [f for f in files if isinstance(f, str) and f.strip()]
    if not paths:
        return None
    Log.debug(f"Detected file request: {paths}")
    return FileRequest(paths)


def strip_file_request(text: str) -> str:
    """*text* with the first file request removed."""
    m = _FILE_REQUEST_RE.search(text or "")
    if not m:
        return text
    return (text[:m.start()] + text[m.end():]).strip()


def _read_one(sandbox: ProjectSandbox, rel: str) -> str:
    try:
        op = sandbox.read_file(rel)
    except Exception as e:
        Log.error(f"Error reading file {rel}: {e}")
        return f"Error reading file: {e}"
    if op.success:
        Log.debug(f"Successfully read file: {rel}")
        return truncate_output(op.content, Config.MAX_FILE_READ, rel)
    if op.kind == ErrorKind.SANDBOX_VIOLATION:
        Log.warning(f"Security violation: path outside project folder: {rel}")
        return SECURITY_VIOLATION_MSG
    if op.kind == ErrorKind.NOT_FOUND:
        return f"Error: File not found: {rel}"
    return f"Error reading file: {op.error}"


def fulfil_file_request(request: FileRequest, sandbox: ProjectSandbox) -> Dict[str, str]:
    """Read every requested path. Never raises for a single bad path."""
    if sandbox.root is None:
        raise ProjectNotSetError()
    paths   = list(request.files)
    workers = max(1, min(Config.FILE_READ_WORKERS, len(paths)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="file-request") as pool:
        contents = list(pool.map(lambda p: _read_one(sandbox, p), paths))
    outcome: Dict[str, str] = {}
    for rel, content in zip(paths, contents):
        outcome[rel] = content
    return outcome


def format_file_contents(outcome: Dict[str, str]) -> str:
    parts = ["\n\n## FILE CONTENTS\n\n"]
    for rel, content in outcome.items():
        parts.append(f"### {rel}\n\n")
        lang = _FENCE_LANGS.get(PurePosixPath(rel.replace("\\", "/")).suffix.lower())
        if lang:
            parts.append(f"```{lang}\n{content}\n```\n\n")
        else:
            parts.append(f"{content}\n\n")
    return "".join(parts)


class FileRequestHandler:
    def __init__(self, sandbox: ProjectSandbox):
        self.sandbox = sandbox

    def handle(self, text: str) -> Tuple[str, Optional[Dict[str, str]]]:
        """Return (visible_text, outcome). Text is unchanged when nothing was asked."""
        request = detect_file_request(text)
        if request is None:
            return text, None
        outcome = fulfil_file_request(request, self.sandbox)
        return strip_file_request(text) + format_file_contents(outcome), outcome
