"""Sandboxed script execution."""

import asyncio
import fnmatch
import os
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from loguru import logger

from safeshell.config.schema import SafeShellConfig
from safeshell.exec.errors import ExecTimeoutError, ExecutionError
from safeshell.exec.markers import (
    JobEvent,
    MarkerEvent,
    extract_state,
    find_blocked_host,
    parse_marker,
    strip_control_lines,
)
from safeshell.exec.sandbox import build_runtime_args, build_sandbox_flags
from safeshell.exec.scripts import cache_script, validate_imports
from safeshell.exec.types import ExecResult, SpawnResult
from safeshell.exec.violations import embed_inline_handler
from safeshell.session.manager import JOB_OUTPUT_LIMIT, Job, Session, SessionManager

ENV_SCRIPT_HASH = "SAFESH_SCRIPT_HASH"
ENV_SCRIPT_ID = "SAFESH_SCRIPT_ID"
ENV_SHELL_ID = "SAFESH_SHELL_ID"

# Longest single stderr line the reader accepts
STREAM_LIMIT = 1024 * 1024

# Strong references to running background executions
_background_tasks: set[asyncio.Task] = set()


@dataclass
class ProcessHandle:
    """Signals a spawned process by pid."""
    pid: int

    def terminate(self) -> None:
        os.kill(self.pid, signal.SIGTERM)


def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill the process group (the child was started in its own session)."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class SubprocessManager:
    """
    Spawns sandboxed subprocesses and collects their output under a deadline.

    A non-zero exit is returned in SpawnResult.status, not raised. Timeouts
    kill the child and raise ExecTimeoutError; other failures raise
    ExecutionError.
    """

    async def spawn_and_collect(
        self,
        args: list[str],
        cwd: str,
        env: dict[str, str] | None,
        timeout: float,
        *,
        on_spawn: Callable[[int], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        on_timeout: Callable[[], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        command: str | None = None,
    ) -> SpawnResult:
        label = command or " ".join(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                limit=STREAM_LIMIT,
                start_new_session=True,
            )
        except OSError as e:
            if on_error:
                on_error(e)
            raise ExecutionError(f"Failed to start '{args[0]}': {e}", {"command": label}) from e

        if on_spawn:
            on_spawn(process.pid)

        stdout_task = asyncio.create_task(process.stdout.read())
        stderr_task = asyncio.create_task(self._read_stderr(process.stderr, on_stderr_line))

        try:
            status = await asyncio.wait_for(self._wait(process, stdout_task, stderr_task), timeout=timeout)
        except asyncio.TimeoutError:
            await self._cleanup(process, stdout_task, stderr_task)
            logger.warning(f"Killed pid {process.pid} after {timeout}s timeout")
            if on_timeout:
                on_timeout()
            raise ExecTimeoutError(int(timeout * 1000), label)
        except Exception as e:
            await self._cleanup(process, stdout_task, stderr_task)
            if on_error:
                on_error(e)
            raise ExecutionError(f"Execution failed for '{label}': {e}", {"command": label}) from e

        stdout = stdout_task.result().decode("utf-8", errors="replace")
        stderr = stderr_task.result()
        return SpawnResult(status=status, stdout=stdout, stderr=stderr, pid=process.pid)

    async def _wait(self, process: asyncio.subprocess.Process, *tasks: asyncio.Task) -> int:
        await asyncio.gather(*tasks)
        return await process.wait()

    async def _read_stderr(
        self,
        stream: asyncio.StreamReader,
        on_line: Callable[[str], None] | None,
    ) -> str:
        chunks: list[str] = []
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace")
            chunks.append(line)
            if on_line:
                on_line(line.rstrip("\r\n"))
        return "".join(chunks)

    async def _cleanup(self, process: asyncio.subprocess.Process, *tasks: asyncio.Task) -> None:
        if process.returncode is None:
            _kill(process)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await process.wait()


# ── Environment ─────────────────────────────────────────────────────


def build_env(
    config: SafeShellConfig,
    session: Session | None = None,
    extra: dict[str, str] | None = None,
    script_hash: str | None = None,
    script_id: str | None = None,
    base: dict[str, str] | None = None,
) -> dict[str, str]:
    """
    Environment for a sandboxed script.

    Starts from the host environment (only env.allow names when
    allow_read_all is False), drops masked names, then layers the session
    and caller variables and the traceability ids.
    """
    source = dict(os.environ if base is None else base)
    if config.env.allow_read_all is False:
        source = {k: v for k, v in source.items() if k in config.env.allow}
    env = {
        k: v for k, v in source.items()
        if not any(fnmatch.fnmatchcase(k, pattern) for pattern in config.env.mask)
    }
    if session:
        env.update(session.env)
        env[ENV_SHELL_ID] = session.id
    env.update(extra or {})
    if script_hash:
        env[ENV_SCRIPT_HASH] = script_hash
    if script_id:
        env[ENV_SCRIPT_ID] = script_id
    return env


def _truncate(text: str) -> tuple[str, bool]:
    if len(text) <= JOB_OUTPUT_LIMIT:
        return text, False
    return text[:JOB_OUTPUT_LIMIT], True


# ── Script execution ────────────────────────────────────────────────


class _ExecutionTracker:
    """Mirrors a running script into the session while it executes."""

    def __init__(self, manager: SessionManager | None, session: Session | None, code: str, background: bool):
        self.manager = manager
        self.session = session
        self.code = code
        self.background = background
        self.events: list[MarkerEvent] = []
        self.job_id: str | None = None
        if manager and session and manager.get(session.id):
            self.job_id = manager.next_job_id(session.id)

    @property
    def tracking(self) -> bool:
        return self.job_id is not None

    def on_spawn(self, pid: int) -> None:
        if not self.tracking:
            return
        self.manager.add_job(self.session.id, Job(
            id=self.job_id,
            pid=pid,
            code=self.code,
            background=self.background,
            process=ProcessHandle(pid),
        ))

    def on_stderr_line(self, line: str) -> None:
        event = parse_marker(line)
        if event is None:
            return
        self.events.append(event)
        if event.kind == "job" and self.tracking:
            job_event = JobEvent.from_payload(event.payload)
            if job_event:
                self._apply_job_event(job_event)

    def _apply_job_event(self, event: JobEvent) -> None:
        session_id = self.session.id
        if event.type == "start":
            code = " ".join([event.command or "unknown", *(event.args or [])])
            self.manager.add_job(session_id, Job(
                id=event.id,
                pid=event.pid or 0,
                code=code,
                background=self.background,
            ))
        else:
            self.manager.update_job(
                session_id,
                event.id,
                status="completed" if event.exit_code == 0 else "failed",
                exit_code=event.exit_code,
                completed_at=datetime.now(),
                duration_ms=event.duration,
            )

    def finish(self, status: str, exit_code: int | None = None, stdout: str = "", stderr: str = "") -> None:
        if not self.tracking:
            return
        job = self.manager.get_job(self.session.id, self.job_id)
        if not job:
            return
        completed = datetime.now()
        stdout, stdout_truncated = _truncate(stdout)
        stderr, stderr_truncated = _truncate(stderr)
        self.manager.update_job(
            self.session.id,
            self.job_id,
            status=status,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            stdout_truncated=stdout_truncated,
            stderr_truncated=stderr_truncated,
            completed_at=completed,
            duration_ms=int((completed - job.started_at).total_seconds() * 1000),
        )
        job.process = None

    def on_timeout(self) -> None:
        self.finish("failed")

    def on_error(self, error: Exception) -> None:
        self.finish("failed", stderr=str(error))

    def payloads(self, kind: str) -> list[dict[str, Any]]:
        return [e.payload for e in self.events if e.kind == kind]


def _sync_state(manager: SessionManager | None, session: Session | None, stdout: str) -> str:
    clean, state = extract_state(stdout)
    if state and manager and session and manager.get(session.id):
        manager.update(session.id, cwd=state.cwd, env=state.env, vars=state.vars)
    elif state and session:
        if state.cwd:
            session.cwd = state.cwd
        session.env.update(state.env or {})
        session.vars.update(state.vars or {})
    return clean


def _build_result(tracker: _ExecutionTracker, spawned: SpawnResult, stdout: str, stderr: str,
                  script_hash: str) -> ExecResult:
    result = ExecResult(
        success=spawned.status == 0,
        exit_code=spawned.status,
        stdout=stdout,
        stderr=stderr,
        job_id=tracker.job_id,
        script_hash=script_hash,
    )
    for payload in tracker.payloads("cmd_error"):
        if isinstance(payload.get("command"), str) and result.blocked_command is None:
            result.blocked_command = payload["command"]
    for payload in tracker.payloads("init_error"):
        result.blocked_commands.extend(payload.get("notAllowed") or [])
        result.not_found_commands.extend(payload.get("notFound") or [])
    result.blocked_host = find_blocked_host(spawned.stderr)
    violations = tracker.payloads("violation")
    if violations:
        result.violation = violations[0]
    return result


async def execute_script(
    code: str,
    config: SafeShellConfig,
    *,
    session_manager: SessionManager | None = None,
    session: Session | None = None,
    cwd: str | None = None,
    timeout: float | None = None,
    background: bool = False,
    env: dict[str, str] | None = None,
    passthrough: bool = False,
    manager: SubprocessManager | None = None,
) -> ExecResult:
    """
    Run a script in the sandboxed runtime.

    The script is cached by hash, with the child-side error handler
    embedded, so a later retry can re-run it. When a
    registered session is given, the run becomes a job in it and job
    markers on stderr are mirrored as jobs in real time. With background
    set, returns as soon as the process is spawned.

    Raises ExecTimeoutError, ExecutionError or ImportBlockedError.
    """
    cwd = cwd or (session.cwd if session else os.getcwd())
    timeout = timeout if timeout is not None else config.timeout_seconds
    manager = manager or SubprocessManager()

    validate_imports(code, config.imports)
    script_hash, script_path = cache_script(embed_inline_handler(code))

    flags = build_sandbox_flags(config, str(script_path.parent), cwd)
    args = [config.runtime, *build_runtime_args(flags, str(script_path), config.runtime_flags)]

    tracker = _ExecutionTracker(session_manager, session, code, background)
    run_env = build_env(config, session, env, script_hash, tracker.job_id or script_hash)

    async def run() -> ExecResult:
        spawned = await manager.spawn_and_collect(
            args,
            cwd,
            run_env,
            timeout,
            on_spawn=tracker.on_spawn,
            on_stderr_line=tracker.on_stderr_line,
            on_timeout=tracker.on_timeout,
            on_error=tracker.on_error,
            command=str(script_path),
        )
        stdout = _sync_state(session_manager, session, spawned.stdout)
        stderr = strip_control_lines(spawned.stderr)
        tracker.finish("completed" if spawned.status == 0 else "failed", spawned.status, stdout, stderr)
        if passthrough:
            sys.stdout.write(stdout)
            sys.stdout.flush()
            sys.stderr.write(stderr)
            sys.stderr.flush()
        return _build_result(tracker, spawned, stdout, stderr, script_hash)

    if not background:
        return await run()

    spawned_event = asyncio.Event()
    original_on_spawn = tracker.on_spawn

    def on_spawn(pid: int) -> None:
        original_on_spawn(pid)
        spawned_event.set()

    tracker.on_spawn = on_spawn
    task = asyncio.create_task(run())
    _background_tasks.add(task)
    task.add_done_callback(_background_done)

    # Returns once spawned, or with the error if spawning failed
    waiter = asyncio.create_task(spawned_event.wait())
    await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    waiter.cancel()
    if task.done() and task.exception() is not None:
        raise task.exception()
    return ExecResult(success=True, exit_code=0, job_id=tracker.job_id, script_hash=script_hash)


def _background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Background script failed: {task.exception()}")
