import pytest

from pilot_commands import CommandExecutor
from pilot_core import Config, ProjectNotSetError, ProjectSandbox
from pilot_files import (
    SECURITY_VIOLATION_MSG, FileRequest, FileRequestHandler, detect_file_request,
    format_file_contents, fulfil_file_request, strip_file_request,
)


def test_detect_request_at_end_of_prose():
    text = 'Let me look at the config first.\n{"files": ["src/config.py", "README.md"]}'
    assert detect_file_request(text) == FileRequest(["src/config.py", "README.md"])


def test_first_request_wins():
    text = '{"files": ["a.txt"]} and later {"files": ["b.txt"]}'
    assert detect_file_request(text).files == ["a.txt"]


@pytest.mark.parametrize("text", [
    "",
    "no request here",
    '{"files": []}',
    '{"files": [1, 2]}',
    '{"files": ["a.txt",]}',
])
def test_no_request(text):
    assert detect_file_request(text) is None


def test_mixed_batch_reports_every_path(sandbox, project):
    (project / "a.txt").write_text("alpha", encoding="utf-8")
    (project.parent / "secret.txt").write_text("hidden", encoding="utf-8")
    outcome = fulfil_file_request(FileRequest(["a.txt", "../secret.txt", "missing.txt"]), sandbox)
    assert list(outcome) == ["a.txt", "../secret.txt", "missing.txt"]
    assert outcome["a.txt"] == "alpha"
    assert outcome["../secret.txt"] == SECURITY_VIOLATION_MSG
    assert outcome["missing.txt"] == "Error: File not found: missing.txt"
    assert "hidden" not in "".join(outcome.values())


def test_order_is_preserved_with_parallel_reads(sandbox, project, monkeypatch):
    monkeypatch.setattr(Config, "FILE_READ_WORKERS", 8)
    names = [f"f{i:02d}.txt" for i in range(20)]
    for n in names:
        (project / n).write_text(n.upper(), encoding="utf-8")
    outcome = fulfil_file_request(FileRequest(list(reversed(names))), sandbox)
    assert list(outcome) == list(reversed(names))
    assert all(outcome[n] == n.upper() for n in names)


def test_duplicates_collapse_to_one_entry(sandbox, project):
    (project / "a.txt").write_text("A", encoding="utf-8")
    outcome = fulfil_file_request(FileRequest(["a.txt", "b.txt", "a.txt"]), sandbox)
    assert list(outcome) == ["a.txt", "b.txt"]


def test_unset_project_raises():
    with pytest.raises(ProjectNotSetError):
        fulfil_file_request(FileRequest(["a.txt"]), ProjectSandbox.open(None))


def test_long_files_are_truncated(sandbox, project, monkeypatch):
    monkeypatch.setattr(Config, "MAX_FILE_READ", 100)
    (project / "big.txt").write_text("x" * 1000, encoding="utf-8")
    content = fulfil_file_request(FileRequest(["big.txt"]), sandbox)["big.txt"]
    assert "TRUNCATED big.txt" in content
    assert len(content) < 1000


def test_format_uses_fence_for_known_extensions():
    out = format_file_contents({"app.py": "print(1)", "notes.txt": "plain words"})
    assert out.startswith("\n\n## FILE CONTENTS\n\n")
    assert "### app.py\n\n```py\nprint(1)\n```" in out
    assert "### notes.txt\n\nplain words\n\n" in out
    assert "```\nplain words" not in out


def test_strip_removes_only_the_request():
    text = 'Checking.\n{"files": ["a.txt"]}'
    assert strip_file_request(text) == "Checking."
    assert strip_file_request("nothing") == "nothing"


def test_end_to_end_create_then_request(sandbox):
    CommandExecutor(sandbox).process_response(
        'Here you go.\n{"command":"Create","fileName":"x.txt","content":"hi"}\nDone.')
    reply = 'Let me double-check the file.\n{"files":["x.txt"]}'
    visible, outcome = FileRequestHandler(sandbox).handle(reply)
    assert outcome == {"x.txt": "hi"}
    assert "### x.txt" in visible
    assert "\nhi\n" in visible
    assert '{"files"' not in visible
    assert visible.startswith("Let me double-check the file.")


def test_handler_passes_text_through_without_request(sandbox):
    assert FileRequestHandler(sandbox).handle("just talk") == ("just talk", None)
