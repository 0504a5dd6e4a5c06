#!/usr/bin/env python3
"""
pilot_web.py — JSON API for CodePilot.

create_app(root) returns a Flask app bound to one project folder. The routes
mirror what a desktop front end needs: run a model reply's commands, answer
its file request, and step the task orchestrator through clarification and
execution.

Run standalone:
  python pilot_web.py [PORT] [PROJECT]
"""
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from flask import Flask, jsonify, request

from pilot_commands import BackgroundDescriber, CommandExecutor, command_from_dict
from pilot_core import Config, Log, ProjectNotSetError, ProjectSandbox, project_lock
from pilot_files import FileRequestHandler
from pilot_llm import FileDescriber, LLMClient, LLMCollaborators
from pilot_tasks import StepResult, TaskOrchestrator


def create_app(root: Optional[str], collaborators: Any = None,
               model: Optional[type] = None) -> Flask:
    """*collaborators* defaults to LLMCollaborators over *model* (LLMClient)."""
    client    = model or LLMClient
    sandbox   = ProjectSandbox.open(root)
    describer = None
    if sandbox.root is not None:
        Config.init(sandbox.root)
        describer = BackgroundDescriber(FileDescriber(sandbox, client).generate)

    app      = Flask(__name__)
    executor = CommandExecutor(sandbox, describer)
    files    = FileRequestHandler(sandbox)
    state    = {"orch": None}
    lock     = threading.Lock()

    app.config["SANDBOX"]   = sandbox
    app.config["DESCRIBER"] = describer

    def _orch() -> TaskOrchestrator:
        if state["orch"] is None:
            state["orch"] = TaskOrchestrator(
                sandbox, collaborators or LLMCollaborators(client), describer=describer)
        return state["orch"]

    def _step(step: StepResult):
        return jsonify({**step.to_dict(), "state": _orch().to_dict()})

    def _body() -> dict:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    @app.before_request
    def _quiet():
        # thread-local, affects this request thread only
        Log.set_silent(True)

    @app.errorhandler(ProjectNotSetError)
    def _no_project(e):
        return jsonify({"ok": False, "error": str(e)}), 400

    # ── commands & file requests ───────────────────────────────────────────────

    @app.route("/process-response", methods=["POST"])
    def process_response():
        text = _body().get("response")
        if not isinstance(text, str):
            return jsonify({"ok": False, "error": "response text required"}), 400
        if sandbox.root is None:
            raise ProjectNotSetError()
        results = executor.process_response(text)
        return jsonify({"ok": True, "results": [r.to_dict() for r in results]})

    @app.route("/execute-command", methods=["POST"])
    def execute_command():
        data = _body().get("command")
        if not isinstance(data, dict) or not data.get("command"):
            return jsonify({"ok": False, "error": "command object required"}), 400
        if sandbox.root is None:
            raise ProjectNotSetError()
        with project_lock(sandbox):
            result = executor.execute(command_from_dict(data))
        return jsonify(result.to_dict())

    @app.route("/file-request", methods=["POST"])
    def file_request():
        text = _body().get("response")
        if not isinstance(text, str):
            return jsonify({"ok": False, "error": "response text required"}), 400
        visible, outcome = files.handle(text)
        return jsonify({"found": outcome is not None, "text": visible, "files": outcome or {}})

    # ── task orchestration ─────────────────────────────────────────────────────

    @app.route("/task")
    def task_state():
        with lock:
            return jsonify(_orch().to_dict())

    @app.route("/task/start", methods=["POST"])
    def task_start():
        task = _body().get("task")
        if not isinstance(task, str) or not task.strip():
            return jsonify({"ok": False, "error": "task required"}), 400
        with lock:
            return _step(_orch().start(task))

    @app.route("/task/next", methods=["POST"])
    def task_next():
        with lock:
            return _step(_orch().next_question(str(_body().get("answer") or "")))

    @app.route("/task/previous", methods=["POST"])
    def task_previous():
        with lock:
            return _step(_orch().previous_question(str(_body().get("answer") or "")))

    @app.route("/task/finalize", methods=["POST"])
    def task_finalize():
        with lock:
            return _step(_orch().finalize_clarification())

    @app.route("/task/begin", methods=["POST"])
    def task_begin():
        with lock:
            return _step(_orch().begin_execution())

    @app.route("/task/resume", methods=["POST"])
    def task_resume():
        with lock:
            return _step(_orch().resume())

    @app.route("/task/message", methods=["POST"])
    def task_message():
        message = _body().get("message")
        if not isinstance(message, str) or not message.strip():
            return jsonify({"ok": False, "error": "message required"}), 400
        with lock:
            turn = _orch().send_message(message)
            return jsonify({**turn.to_dict(), "state": _orch().to_dict()})

    @app.route("/task/complete", methods=["POST"])
    def task_complete():
        with lock:
            return _step(_orch().complete_item(str(_body().get("summary") or "")))

    @app.route("/task/select", methods=["POST"])
    def task_select():
        index = _body().get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            return jsonify({"ok": False, "error": "integer index required"}), 400
        with lock:
            return _step(_orch().select_item(index))

    @app.route("/task/prompt")
    def task_prompt():
        with lock:
            orch = _orch()
            if orch.active_item is None:
                return jsonify({"ok": False, "error": "No active item"}), 409
            return jsonify({"ok": True, "prompt": orch.build_prompt()})

    return app


# =============================================================================
# STARTUP
# =============================================================================

if __name__ == "__main__":
    port    = int(sys.argv[1]) if len(sys.argv) > 1 else 5000
    project = sys.argv[2] if len(sys.argv) > 2 else (Config.PROJECT_ROOT or str(Path.cwd()))
    app     = create_app(project)

    print("\n" + "═" * 58)
    print("  CodePilot Web")
    print("═" * 58)
    print(f"  Local   →  http://localhost:{port}")
    print(f"  Project : {app.config['SANDBOX'].root}")
    print(f"  LLM     : {Config.LLM_URL}")
    print("═" * 58 + "\n")

    app.run(host="127.0.0.1", port=port, threaded=True, debug=False)
