#!/usr/bin/env python3
"""
pilot_main.py — Main entrypoint for CodePilot.

Contains: slash commands, the interactive REPL that walks a task through
clarification and todo execution, and the CLI argument parser.

Usage:
  python pilot_main.py "task description"          # Clarify, plan and execute interactively
  python pilot_main.py --resume                    # Continue the project's saved todo list
  python pilot_main.py --apply reply.txt           # Run the commands in a saved model reply
  python pilot_main.py --request reply.txt         # Show what a reply's file request would return
  python pilot_main.py --project ~/code/app ...    # Any of the above against another folder
"""
import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pilot_commands import BackgroundDescriber, CommandExecutor, CommandResult
from pilot_core import VERSION, Colors, Config, Log, ProjectSandbox, colored
from pilot_files import FileRequestHandler
from pilot_llm import FileDescriber, LLMClient, LLMCollaborators
from pilot_tasks import StepResult, TaskOrchestrator, TaskPhase, TurnResult


# =============================================================================
# PROJECT SELECTION
# =============================================================================

def _pick_project(arg_project: Optional[str]) -> Optional[ProjectSandbox]:
    """--project, then PROJECT_ROOT, then the current directory."""
    raw = arg_project or Config.PROJECT_ROOT or str(Path.cwd())
    sandbox = ProjectSandbox.open(raw)
    if sandbox.root is None or not sandbox.root.is_dir():
        Log.error(f"Project folder does not exist: {raw}")
        return None
    return sandbox


# =============================================================================
# OUTPUT
# =============================================================================

def format_command_results(results: List[CommandResult]) -> str:
    lines = []
    for r in results:
        label = r.command.to_dict().get("command")
        name  = r.command.to_dict().get("fileName") or ""
        if r.success:
            lines.append(colored(f"  ✓ {label} {name}", Colors.GREEN))
        else:
            lines.append(colored(f"  ✗ {label} {name}: {r.error}", Colors.RED))
    return "\n".join(lines)


def format_turn(turn: TurnResult) -> str:
    if not turn.success:
        return colored(f"  ✗ {turn.error}", Colors.RED)
    lines = []
    for outcome in turn.files:
        lines.append(colored(f"  📄 provided: {', '.join(outcome)}", Colors.GRAY))
    lines.append(turn.reply)
    if turn.results:
        lines.append(format_command_results(turn.results))
    return "\n".join(lines)


def format_step(step: StepResult) -> str:
    if step.success:
        return ""
    return colored(f"  ✗ {step.error}", Colors.RED)


def format_question(orch: TaskOrchestrator) -> str:
    s = orch.session
    if s is None or s.current is None:
        return ""
    q    = s.current
    head = colored(f"\nQuestion {s.current_index + 1}/{len(s.questions)}: ", Colors.CYAN, bold=True)
    out  = head + q.text
    if q.hint:
        out += "\n" + colored(f"  hint: {q.hint}", Colors.GRAY)
    previous = s.answer_at(s.current_index)
    if previous:
        out += "\n" + colored(f"  current answer: {previous}", Colors.GRAY)
    return out


# =============================================================================
# SLASH COMMANDS
# =============================================================================

@dataclass
class SlashCommand:
    name:        str
    description: str
    handler:     Callable


def cmd_help(orch: TaskOrchestrator, **_) -> str:
    return colored("""
╭──────────────────────────────────────────────────────╮
│                   Available Commands                 │
├──────────────────────────────────────────────────────┤
│  /help        This help screen                       │
│  /back [ans]  Previous clarification question        │
│  /todo        Show the todo list                     │
│  /item N      Focus todo item N (reopens if done)    │
│  /done TEXT   Complete the active item with a summary│
│  /prompt      Show the prompt the model will receive │
│  /status      Show phase and progress                │
│  quit         Exit                                   │
╰──────────────────────────────────────────────────────╯
""", Colors.CYAN)


def cmd_back(orch: TaskOrchestrator, arg: str = "", **_) -> str:
    step = orch.previous_question(arg)
    return format_step(step) or format_question(orch)


def cmd_todo(orch: TaskOrchestrator, **_) -> str:
    if not orch.todos:
        return colored("  No todo list yet.", Colors.GRAY)
    return colored("\n📋 Todo List:", Colors.BLUE, bold=True) + "\n" + orch.display_todos()


def cmd_item(orch: TaskOrchestrator, arg: str = "", **_) -> str:
    try:
        number = int(arg)
    except ValueError:
        return "Usage: /item <number>"
    step = orch.select_item(number - 1)
    if not step.success:
        return format_step(step)
    item = orch.active_item
    out  = colored(f"  → Item {number}: {item.description}", Colors.CYAN)
    if item.summary:
        out += "\n" + colored(f"    summary: {item.summary}", Colors.GRAY)
    return out


def cmd_done(orch: TaskOrchestrator, arg: str = "", **_) -> str:
    if not arg.strip():
        return "Usage: /done <summary of what was accomplished>"
    step = orch.complete_item(arg)
    if not step.success:
        return format_step(step)
    if orch.phase == TaskPhase.COMPLETED:
        return colored("  ✓ All items completed.", Colors.GREEN, bold=True)
    item = orch.active_item
    return colored(f"  ✓ Next: item {item.index + 1}: {item.description}", Colors.GREEN)


def cmd_prompt(orch: TaskOrchestrator, **_) -> str:
    if orch.active_item is None:
        return colored("  No active item.", Colors.GRAY)
    return orch.build_prompt()


def cmd_status(orch: TaskOrchestrator, **_) -> str:
    done  = sum(1 for t in orch.todos if t.summary)
    lines = [
        colored("\nStatus:", Colors.CYAN, bold=True),
        f"  Project : {orch.sandbox.root}",
        f"  Phase   : {orch.phase.value}",
        f"  Items   : {done}/{len(orch.todos)} completed",
    ]
    if orch.active_item is not None:
        lines.append(f"  Active  : {orch.active_item.index + 1}. {orch.active_item.description}")
    lines.append(f"  Model   : {Config.LLM_MODEL}")
    return "\n".join(lines)


SLASH_COMMANDS: Dict[str, SlashCommand] = {
    c.name: c for c in [
        SlashCommand("/help",   "Show help",                    cmd_help),
        SlashCommand("/back",   "Previous question",            cmd_back),
        SlashCommand("/todo",   "Show todo list",               cmd_todo),
        SlashCommand("/item",   "Focus a todo item",            cmd_item),
        SlashCommand("/done",   "Complete the active item",     cmd_done),
        SlashCommand("/prompt", "Show the assembled prompt",    cmd_prompt),
        SlashCommand("/status", "Show status",                  cmd_status),
    ]
}


# =============================================================================
# REPL
# =============================================================================

def handle_input(orch: TaskOrchestrator, line: str) -> str:
    """One REPL line → text to print. Plain text means whatever the phase expects."""
    if line.startswith("/"):
        parts    = line.split(maxsplit=1)
        cmd_name = parts[0]
        cmd_arg  = parts[1] if len(parts) > 1 else ""
        if cmd_name not in SLASH_COMMANDS:
            return colored(f"  Unknown command: {cmd_name}. Type /help.", Colors.RED)
        return SLASH_COMMANDS[cmd_name].handler(orch=orch, arg=cmd_arg)

    if orch.phase == TaskPhase.TASK_ENTRY:
        step = orch.start(line)
    elif orch.phase == TaskPhase.CLARIFYING:
        step = orch.next_question(line)
    elif orch.phase == TaskPhase.EXECUTING:
        return format_turn(orch.send_message(line))
    else:
        return colored("  All items completed. Use /item N to revisit one.", Colors.GRAY)

    out = [format_step(step)]
    if orch.phase == TaskPhase.CLARIFYING:
        out.append(format_question(orch))
    if orch.phase == TaskPhase.CONTEXT_READY:
        out.append(_begin(orch))
    return "\n".join(s for s in out if s)


def _begin(orch: TaskOrchestrator) -> str:
    step = orch.begin_execution()
    if not step.success:
        return format_step(step)
    return "\n".join([cmd_todo(orch), "",
                      colored("Describe what to do for the active item, "
                              "or /done SUMMARY when it is finished.", Colors.GRAY)])


def _phase_prompt(orch: TaskOrchestrator) -> str:
    if orch.phase == TaskPhase.TASK_ENTRY:
        return colored("task> ", Colors.YELLOW, bold=True)
    if orch.phase == TaskPhase.CLARIFYING:
        return colored("answer> ", Colors.YELLOW, bold=True)
    if orch.active_item is not None:
        return colored(f"[{orch.active_item.index + 1}/{len(orch.todos)}]> ", Colors.YELLOW, bold=True)
    return colored("pilot> ", Colors.YELLOW, bold=True)


def run_repl(orch: TaskOrchestrator, read: Callable[[str], str] = input,
             write: Callable[[str], None] = print) -> int:
    Log.info("/help for commands, 'quit' to exit.\n")
    while True:
        try:
            line = read(_phase_prompt(orch)).strip()
        except (EOFError, KeyboardInterrupt):
            write("")
            break
        if line.lower() in ("quit", "exit", "q"):
            break
        if not line and orch.phase != TaskPhase.CLARIFYING:
            continue
        out = handle_input(orch, line)
        if out:
            write(out)
    Log.info("Goodbye!")
    return 0


# =============================================================================
# CLI ENTRYPOINT
# =============================================================================

def _read_reply(path: str) -> Optional[str]:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        Log.error(f"Cannot read {path}: {e}")
        return None


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description=f"CodePilot v{VERSION}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "PROJECT:\n"
            "  Set via --project, the PROJECT_ROOT env var, or a .env file.\n"
            "  Defaults to the current directory.\n\n"
            "SECURITY:\n"
            "  Every file the model reads or writes must stay inside the project\n"
            "  folder. Paths with '..' segments and absolute paths are refused.\n"
        ),
    )
    parser.add_argument("task",      nargs="?", help="Task to clarify, plan and execute")
    parser.add_argument("--project",            help="Project folder")
    parser.add_argument("--apply",   metavar="FILE",
                        help="Execute the commands found in a saved model reply")
    parser.add_argument("--request", metavar="FILE",
                        help="Print a saved reply with its file request fulfilled")
    parser.add_argument("--resume",  action="store_true",
                        help="Continue the project's saved todo list")
    parser.add_argument("--version", action="version", version=f"v{VERSION}")
    args = parser.parse_args(argv)

    sandbox = _pick_project(args.project)
    if sandbox is None:
        return 1
    try:
        Config.init(sandbox.root)
    except ValueError as e:
        print(colored(f"Config error: {e}", Colors.RED))
        return 1
    Log.info(f"Project : {sandbox.root}")

    # ── --apply ────────────────────────────────────────────────────────────────
    if args.apply:
        text = _read_reply(args.apply)
        if text is None:
            return 1
        results = CommandExecutor(sandbox).process_response(text)
        if not results:
            Log.warning("No commands found")
            return 0
        print(format_command_results(results))
        return 0 if all(r.success for r in results) else 1

    # ── --request ──────────────────────────────────────────────────────────────
    if args.request:
        text = _read_reply(args.request)
        if text is None:
            return 1
        visible, outcome = FileRequestHandler(sandbox).handle(text)
        if outcome is None:
            Log.warning("No file request found")
        print(visible)
        return 0

    if not args.task and not args.resume:
        parser.print_help()
        return 0

    # ── interactive task ───────────────────────────────────────────────────────
    Log.info(f"LLM     : {Config.LLM_URL}")
    Log.info("Checking LLM connection…")
    err = LLMClient.validate_connection()
    if err:
        Log.error(f"LLM unavailable: {err}")
        return 1
    Log.success("LLM connected\n")

    describer  = FileDescriber(sandbox)
    background = BackgroundDescriber(describer.generate)
    orch       = TaskOrchestrator(sandbox, LLMCollaborators(), describer=background)
    try:
        if args.resume:
            step = orch.resume()
            if not step.success:
                Log.error(step.error)
                return 1
            print(cmd_todo(orch))
        else:
            out = handle_input(orch, args.task)
            if out:
                print(out)
        return run_repl(orch)
    finally:
        background.shutdown()


if __name__ == "__main__":
    sys.exit(main())
