"""Session and background job tracking."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from safeshell.exec.types import JobStatus

# Maximum concurrent sessions (LRU eviction by activity beyond this)
MAX_SESSIONS = 10

# Estimated bytes a session may hold before finished jobs are trimmed
SESSION_MEMORY_LIMIT = 50 * 1024 * 1024

# Per-stream cap on captured job output
JOB_OUTPUT_LIMIT = 1024 * 1024

# Fixed per-job overhead in the memory estimate
JOB_OVERHEAD = 200


@dataclass
class Job:
    """A script run under a session."""

    id: str
    pid: int
    code: str
    status: JobStatus = "running"
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    background: bool = False
    process: Any = None  # asyncio.subprocess.Process while running


@dataclass
class Session:
    """
    Persistent state between script runs.

    Holds the working directory, environment, persisted variables and jobs.
    """

    id: str
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    jobs: dict[str, Job] = field(default_factory=dict)
    jobs_by_pid: dict[int, str] = field(default_factory=dict)
    job_sequence: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)


def _new_session(cwd: str, env: dict[str, str] | None) -> Session:
    now = datetime.now()
    return Session(
        id=str(uuid.uuid4()),
        cwd=cwd,
        env=dict(env or {}),
        created_at=now,
        last_activity_at=now,
    )


class SessionManager:
    """
    In-memory registry of sessions and their jobs.

    The number of sessions is capped; creating one beyond the cap ends the
    session with the oldest last activity. After each job is added, finished
    jobs are trimmed oldest-first while the session's estimated memory is
    over the limit. Running jobs are never trimmed.
    """

    def __init__(
        self,
        default_cwd: str,
        max_sessions: int = MAX_SESSIONS,
        memory_limit: int = SESSION_MEMORY_LIMIT,
    ):
        self.default_cwd = default_cwd
        self.max_sessions = max_sessions
        self.memory_limit = memory_limit
        self._sessions: dict[str, Session] = {}

    # ── Sessions ──────────────────────────────────────────────────────

    def create(self, cwd: str | None = None, env: dict[str, str] | None = None) -> Session:
        """Create a session, evicting the least recently active one when full."""
        if len(self._sessions) >= self.max_sessions:
            self._evict_least_recent()

        session = _new_session(cwd or self.default_cwd, env)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_or_temp(
        self,
        session_id: str | None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> tuple[Session, bool]:
        """
        Get a session, or build a temporary one that is not registered.

        Returns (session, is_temporary).
        """
        if session_id:
            session = self.get(session_id)
            if session:
                return session, False
        return _new_session(cwd or self.default_cwd, env), True

    def update(
        self,
        session_id: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        vars: dict[str, Any] | None = None,
    ) -> Session | None:
        """Set cwd and merge env/vars."""
        session = self.get(session_id)
        if not session:
            return None
        if cwd is not None:
            session.cwd = cwd
        if env is not None:
            session.env = {**session.env, **env}
        if vars is not None:
            session.vars = {**session.vars, **vars}
        return session

    def set_env(self, session_id: str, key: str, value: str) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.env[key] = value
        return True

    def unset_env(self, session_id: str, key: str) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.env.pop(key, None)
        return True

    def cd(self, session_id: str, path: str) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.cwd = path
        return True

    def set_var(self, session_id: str, key: str, value: Any) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.vars[key] = value
        return True

    def get_var(self, session_id: str, key: str) -> Any:
        session = self.get(session_id)
        return session.vars.get(key) if session else None

    def touch(self, session_id: str) -> None:
        session = self.get(session_id)
        if session:
            session.last_activity_at = datetime.now()

    def end(self, session_id: str) -> bool:
        """End a session. Running jobs it can signal are terminated and marked failed."""
        session = self._sessions.get(session_id)
        if not session:
            return False

        for job in session.jobs.values():
            if job.status == "running" and job.process is not None:
                try:
                    job.process.terminate()
                except (ProcessLookupError, OSError) as e:
                    logger.debug(f"Job {job.id} already gone: {e}")
                else:
                    job.status = "failed"

        del self._sessions[session_id]
        return True

    def count(self) -> int:
        return len(self._sessions)

    def cleanup(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """End sessions created more than max_age ago."""
        now = datetime.now()
        expired = [s.id for s in self._sessions.values() if now - s.created_at > max_age]
        for session_id in expired:
            self.end(session_id)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired session(s)")
        return len(expired)

    def _evict_least_recent(self) -> None:
        if not self._sessions:
            return
        oldest = min(self._sessions.values(), key=lambda s: s.last_activity_at)
        logger.debug(f"Evicting session {oldest.id} (last active {oldest.last_activity_at.isoformat()})")
        self.end(oldest.id)

    # ── Jobs ──────────────────────────────────────────────────────────

    def next_job_id(self, session_id: str) -> str:
        """Next job id for a session: job-{first 8 of session id}-{sequence}."""
        session = self.get(session_id)
        if not session:
            return f"job-{uuid.uuid4().hex[:8]}-0"
        session.job_sequence += 1
        return f"job-{session.id[:8]}-{session.job_sequence}"

    def add_job(self, session_id: str, job: Job) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.jobs[job.id] = job
        session.jobs_by_pid[job.pid] = job.id
        session.last_activity_at = datetime.now()
        self._trim_if_needed(session)
        return True

    def get_job(self, session_id: str, job_id: str) -> Job | None:
        session = self.get(session_id)
        return session.jobs.get(job_id) if session else None

    def get_job_by_pid(self, session_id: str, pid: int) -> Job | None:
        session = self.get(session_id)
        if not session:
            return None
        job_id = session.jobs_by_pid.get(pid)
        return session.jobs.get(job_id) if job_id else None

    def update_job(self, session_id: str, job_id: str, **updates: Any) -> bool:
        """Set job fields (status, exit_code, stdout, completed_at, ...)."""
        job = self.get_job(session_id, job_id)
        if not job:
            return False
        for name, value in updates.items():
            if not hasattr(job, name):
                raise AttributeError(f"Job has no field '{name}'")
            if value is not None:
                setattr(job, name, value)
        self.touch(session_id)
        return True

    def stop_job(self, session_id: str, job_id: str) -> bool:
        """Terminate a running job and mark it stopped."""
        job = self.get_job(session_id, job_id)
        if not job or job.status != "running":
            return False
        if job.process is not None:
            try:
                job.process.terminate()
            except (ProcessLookupError, OSError) as e:
                logger.debug(f"Job {job.id} already gone: {e}")
        job.status = "stopped"
        job.completed_at = datetime.now()
        job.duration_ms = int((job.completed_at - job.started_at).total_seconds() * 1000)
        self.touch(session_id)
        return True

    def list_jobs(
        self,
        session_id: str,
        status: JobStatus | None = None,
        background: bool | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """Jobs newest first, optionally filtered and limited."""
        session = self.get(session_id)
        if not session:
            return []
        jobs = list(session.jobs.values())
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        if background is not None:
            jobs = [j for j in jobs if j.background == background]
        jobs.sort(key=lambda j: j.started_at, reverse=True)
        if limit is not None and limit > 0:
            jobs = jobs[:limit]
        return jobs

    def estimate_session_memory(self, session: Session) -> int:
        size = 0
        for job in session.jobs.values():
            size += len(job.stdout) + len(job.stderr) + len(job.code) + JOB_OVERHEAD
        size += len(json.dumps(session.vars, default=str))
        return size

    def _trim_if_needed(self, session: Session) -> None:
        if self.estimate_session_memory(session) <= self.memory_limit:
            return

        finished = sorted(
            (j for j in session.jobs.values() if j.status != "running"),
            key=lambda j: j.started_at,
        )
        for job in finished:
            del session.jobs[job.id]
            session.jobs_by_pid.pop(job.pid, None)
            logger.debug(f"Trimmed job {job.id} from session {session.id}")
            if self.estimate_session_memory(session) <= self.memory_limit:
                break

    # ── Serialization ─────────────────────────────────────────────────

    def serialize(self, session: Session) -> dict[str, Any]:
        """Session summary with job code shortened to 100 chars."""
        return {
            "sessionId": session.id,
            "cwd": session.cwd,
            "env": session.env,
            "vars": session.vars,
            "jobs": [
                {
                    "id": j.id,
                    "code": j.code if len(j.code) <= 100 else j.code[:100] + "...",
                    "status": j.status,
                    "background": j.background,
                    "startedAt": j.started_at.isoformat(),
                    "duration": j.duration_ms,
                }
                for j in session.jobs.values()
            ],
            "createdAt": session.created_at.isoformat(),
            "lastActivityAt": session.last_activity_at.isoformat(),
        }

    def list(self) -> list[Session]:
        return [*self._sessions.values()]
