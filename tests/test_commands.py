import json
import threading
import time

import pytest

from pilot_commands import (
    BackgroundDescriber, CommandExecutor, CreateCommand, DeleteCommand,
    InvalidCommand, ModifyCommand, extract_json, format_results, iter_json_objects,
    parse_commands,
)
from pilot_core import Config, ErrorKind, ProjectSandbox
from pilot_tasks import TaskStore


def _cmd(**fields) -> str:
    return json.dumps(fields)


# =============================================================================
# PARSER
# =============================================================================

def test_prose_without_commands_parses_to_nothing():
    text = "I looked at the code. Sets like {a, b} are fine and so is {\"x\": 1}."
    assert parse_commands(text) == []


def test_single_command_in_prose():
    text = 'Here you go.\n{"command":"Create","fileName":"x.txt","content":"hi"}\nDone.'
    assert parse_commands(text) == [CreateCommand("x.txt", "hi")]


def test_three_commands_keep_left_to_right_order():
    text = "\n".join([
        "First I create it:",
        _cmd(command="Create", fileName="a.txt", content="one"),
        "then change it:",
        "```json",
        _cmd(command="Modify", fileName="a.txt", oldContent="one", newContent="two"),
        "```",
        "and finally remove the old one.",
        _cmd(command="Delete", fileName="old.txt"),
    ])
    commands = parse_commands(text)
    assert [type(c) for c in commands] == [CreateCommand, ModifyCommand, DeleteCommand]
    assert commands[1] == ModifyCommand("a.txt", "one", "two")


def test_braces_inside_strings_do_not_confuse_the_scanner():
    content = 'function f() { return "}"; }\n'
    text = "Code:\n" + _cmd(command="Create", fileName="f.js", content=content)
    assert parse_commands(text) == [CreateCommand("f.js", content)]


def test_objects_in_code_fences_are_ignored():
    text = (
        "Example of the syntax, do not run:\n"
        "```python\n"
        'payload = {"command": "Delete", "fileName": "keep.txt"}\n'
        "```\n"
        "Real one:\n"
        "```json\n"
        '{"command": "Delete", "fileName": "drop.txt"}\n'
        "```\n"
    )
    assert parse_commands(text) == [DeleteCommand("drop.txt")]


def test_command_on_fence_opening_line_is_found():
    text = "\n".join([
        "Here:",
        '```json {"command":"Create","fileName":"a.txt","content":"hi"} ```',
        "Example only:",
        "```python",
        'payload = {"command": "Delete", "fileName": "keep.txt"}',
        "```",
    ])
    assert parse_commands(text) == [CreateCommand("a.txt", "hi")]


def test_untagged_fence_counts_as_data():
    text = "```\n" + _cmd(command="Delete", fileName="a.txt") + "\n```"
    assert parse_commands(text) == [DeleteCommand("a.txt")]


def test_nested_commands_inside_wrapper_are_found():
    text = json.dumps({"actions": [
        {"command": "Create", "fileName": "a.txt", "content": "A"},
        {"command": "Delete", "fileName": "b.txt"},
    ]})
    assert parse_commands(text) == [CreateCommand("a.txt", "A"), DeleteCommand("b.txt")]


def test_broken_object_is_skipped_and_scanning_resumes():
    text = '{"command": "Create", "fileName": oops} ' + _cmd(command="Delete", fileName="z.txt")
    assert parse_commands(text) == [DeleteCommand("z.txt")]


def test_unbalanced_brace_is_skipped():
    text = "{ unterminated " + _cmd(command="Delete", fileName="z.txt")
    assert parse_commands(text) == [DeleteCommand("z.txt")]


def test_unknown_command_name_is_kept_as_invalid():
    text = _cmd(command="Rename", fileName="a.txt")
    commands = parse_commands(text)
    assert len(commands) == 1
    assert isinstance(commands[0], InvalidCommand)
    assert commands[0].name == "Rename"


def test_iter_json_objects_reports_offsets():
    text = 'ab {"k": 1} cd'
    [(start, end, obj)] = list(iter_json_objects(text))
    assert text[start:end] == '{"k": 1}'
    assert obj == {"k": 1}


def test_extract_json_with_required_key():
    text = 'noise {"other": 1} then {"questions": [{"question": "Q?"}]}'
    assert extract_json(text, "questions") == {"questions": [{"question": "Q?"}]}
    assert extract_json(text) == {"other": 1}
    assert extract_json("no json here") is None


# =============================================================================
# EXECUTOR
# =============================================================================

def test_end_to_end_create(sandbox):
    text = 'Here you go.\n{"command":"Create","fileName":"x.txt","content":"hi"}\nDone.'
    results = CommandExecutor(sandbox).process_response(text)
    assert len(results) == 1
    assert results[0].success
    assert sandbox.read_file("x.txt").content == "hi"


def test_create_is_idempotent(sandbox, project):
    executor = CommandExecutor(sandbox)
    cmd = CreateCommand("pkg/mod.py", "x = 1\n")
    first  = executor.execute(cmd)
    before = (project / "pkg" / "mod.py").read_bytes()
    second = executor.execute(cmd)
    assert first.success and second.success
    assert (project / "pkg" / "mod.py").read_bytes() == before


def test_create_accepts_empty_content(sandbox):
    result = CommandExecutor(sandbox).execute(CreateCommand("empty.txt", ""))
    assert result.success
    assert sandbox.read_file("empty.txt").content == ""


@pytest.mark.parametrize("cmd", [
    CreateCommand("a.txt", None),
    CreateCommand("", "text"),
    ModifyCommand("a.txt", "", "x"),
    ModifyCommand("a.txt", "old", None),
    DeleteCommand(None),
])
def test_missing_fields_are_malformed(sandbox, cmd):
    result = CommandExecutor(sandbox).execute(cmd)
    assert not result.success
    assert result.kind == ErrorKind.MALFORMED_COMMAND


def test_modify_replaces_first_occurrence_only(sandbox):
    sandbox.write_file("a.txt", "foo foo foo")
    result = CommandExecutor(sandbox).execute(ModifyCommand("a.txt", "foo", "bar"))
    assert result.success
    assert sandbox.read_file("a.txt").content == "bar foo foo"


def test_modify_pattern_not_found_leaves_file_unchanged(sandbox, project):
    sandbox.write_file("a.txt", "def f():\n    return 1\n")
    before = (project / "a.txt").read_bytes()
    # whitespace differs from the file
    result = CommandExecutor(sandbox).execute(
        ModifyCommand("a.txt", "def f():\n  return 1", "def f():\n    return 2"))
    assert not result.success
    assert result.kind == ErrorKind.PATTERN_NOT_FOUND
    assert (project / "a.txt").read_bytes() == before


def test_modify_missing_file_returns_read_failure(sandbox):
    result = CommandExecutor(sandbox).execute(ModifyCommand("ghost.txt", "a", "b"))
    assert result.kind == ErrorKind.NOT_FOUND
    assert result.error == "File not found: ghost.txt"


def test_modify_keeps_crlf_line_endings(sandbox, project):
    (project / "a.txt").write_bytes(b"line1\r\nline2\r\nline3\r\n")
    executor = CommandExecutor(sandbox)
    assert executor.execute(ModifyCommand("a.txt", "line2", "LINE2")).success
    assert (project / "a.txt").read_bytes() == b"line1\r\nLINE2\r\nline3\r\n"
    assert executor.execute(ModifyCommand("a.txt", "line1\r\nLINE2", "one\r\ntwo")).success
    assert (project / "a.txt").read_bytes() == b"one\r\ntwo\r\nline3\r\n"


def test_create_writes_content_byte_for_byte(sandbox, project):
    assert CommandExecutor(sandbox).execute(CreateCommand("run.bat", "@echo off\r\necho hi\r\n")).success
    assert (project / "run.bat").read_bytes() == b"@echo off\r\necho hi\r\n"


def test_modify_refuses_non_utf8_file(sandbox, project):
    raw = b"caf\xe9 = 1\nx = 2\n"
    (project / "legacy.py").write_bytes(raw)
    result = CommandExecutor(sandbox).execute(ModifyCommand("legacy.py", "x = 2", "x = 3"))
    assert not result.success
    assert result.kind == ErrorKind.IO_ERROR
    assert (project / "legacy.py").read_bytes() == raw


def test_state_folder_is_off_limits_to_commands(sandbox):
    store = TaskStore(sandbox)
    store.save_summary(0, "real")
    state = Config.PILOT_DIR
    text = "\n".join([
        _cmd(command="Create", fileName=f"{state}/completed_items.json",
             content='{"0": {"summary": "INJECTED"}}'),
        _cmd(command="Modify", fileName=f"./{state}/completed_items.json",
             oldContent="real", newContent="INJECTED"),
        _cmd(command="Delete", fileName=f"{state}\\completed_items.json"),
    ])
    results = CommandExecutor(sandbox).process_response(text)
    assert [r.kind for r in results] == [ErrorKind.SANDBOX_VIOLATION] * 3
    assert store.load_summaries()[0]["summary"] == "real"
    assert CommandExecutor(sandbox).execute(CreateCommand(f"{state}rc", "x")).success


def test_batches_on_one_project_run_one_at_a_time(project, monkeypatch):
    real_write = ProjectSandbox.write_file
    guard      = threading.Lock()
    active     = {"now": 0, "peak": 0}
    order      = []

    def slow_write(self, rel, content):
        with guard:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        order.append(rel[0])
        op = real_write(self, rel, content)
        with guard:
            active["now"] -= 1
        return op

    monkeypatch.setattr(ProjectSandbox, "write_file", slow_write)
    start   = threading.Barrier(2)
    results = {}

    def run(tag):
        text = "\n".join(_cmd(command="Create", fileName=f"{tag}{n}.txt", content=tag)
                         for n in range(3))
        executor = CommandExecutor(ProjectSandbox.open(project))
        start.wait()
        results[tag] = executor.process_response(text)

    threads = [threading.Thread(target=run, args=(tag,)) for tag in "ab"]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert all(r.success for tag in "ab" for r in results[tag])
    assert active["peak"] == 1
    assert order in (list("aaabbb"), list("bbbaaa"))


def test_delete_outcomes(sandbox):
    executor = CommandExecutor(sandbox)
    sandbox.write_file("gone.txt", "x")
    assert executor.execute(DeleteCommand("gone.txt")).success
    assert executor.execute(DeleteCommand("gone.txt")).kind == ErrorKind.NOT_FOUND
    assert executor.execute(DeleteCommand("../x.txt")).kind == ErrorKind.SANDBOX_VIOLATION


def test_failures_do_not_stop_the_batch(sandbox):
    text = "\n".join([
        _cmd(command="Create", fileName="../escape.txt", content="x"),
        _cmd(command="Modify", fileName="missing.txt", oldContent="a", newContent="b"),
        _cmd(command="Teleport", fileName="a.txt"),
        _cmd(command="Create", fileName="ok.txt", content="fine"),
    ])
    results = CommandExecutor(sandbox).process_response(text)
    assert [r.success for r in results] == [False, False, False, True]
    assert [r.kind for r in results[:3]] == [
        ErrorKind.SANDBOX_VIOLATION, ErrorKind.NOT_FOUND, ErrorKind.MALFORMED_COMMAND]
    assert sandbox.read_file("ok.txt").content == "fine"


def test_later_commands_see_earlier_effects(sandbox):
    text = "\n".join([
        _cmd(command="Create", fileName="a.txt", content="hello world"),
        _cmd(command="Modify", fileName="a.txt", oldContent="world", newContent="there"),
    ])
    results = CommandExecutor(sandbox).process_response(text)
    assert all(r.success for r in results)
    assert sandbox.read_file("a.txt").content == "hello there"


def test_results_serialise_with_wire_names(sandbox):
    result = CommandExecutor(sandbox).execute(ModifyCommand("nope.txt", "a", "b"))
    d = result.to_dict()
    assert d["command"] == {"command": "Modify", "fileName": "nope.txt",
                            "oldContent": "a", "newContent": "b"}
    assert d["success"] is False
    assert d["kind"] == "not_found"


def test_format_results_lists_every_command(sandbox):
    results = CommandExecutor(sandbox).process_response(
        _cmd(command="Create", fileName="a.txt", content="") + _cmd(command="Delete", fileName="b.txt"))
    report = format_results(results)
    assert report.startswith("COMMAND RESULTS:")
    assert "Create a.txt: ok" in report
    assert "Delete b.txt: FAILED (File not found: b.txt)" in report


# =============================================================================
# BACKGROUND DESCRIPTIONS
# =============================================================================

def test_description_failure_does_not_fail_create(sandbox, monkeypatch):
    monkeypatch.setattr(Config, "ENABLE_DESCRIPTIONS", True)
    called = threading.Event()

    def generate(name):
        called.set()
        raise RuntimeError("model offline")

    describer = BackgroundDescriber(generate)
    try:
        result = CommandExecutor(sandbox, describer).execute(
            CreateCommand("a.txt", "x", description="A file"))
        describer.drain(timeout=5)
    finally:
        describer.shutdown()
    assert result.success
    assert called.is_set()


def test_description_only_scheduled_when_present(sandbox, monkeypatch):
    monkeypatch.setattr(Config, "ENABLE_DESCRIPTIONS", True)
    seen = []
    describer = BackgroundDescriber(seen.append)
    try:
        executor = CommandExecutor(sandbox, describer)
        executor.execute(CreateCommand("plain.txt", "x"))
        executor.execute(CreateCommand("described.txt", "x", description="d"))
        executor.execute(ModifyCommand("plain.txt", "x", "y"))
        describer.drain(timeout=5)
    finally:
        describer.shutdown()
    assert sorted(seen) == ["described.txt", "plain.txt"]


def test_descriptions_disabled_by_config(sandbox):
    seen = []
    describer = BackgroundDescriber(seen.append)
    try:
        assert describer.schedule("a.txt") is None
    finally:
        describer.shutdown()
    assert seen == []
