from __future__ import annotations

import logging
import os
import subprocess
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Sequence

from slotkit.services.process_control import stop_process, write_pid_file
from slotkit.services.schema_context import SqlSchemaContext
from slotkit.services.slot_namespace import SlotNamespace

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_HEALTH_PATH = "/health"
DEFAULT_STARTUP_TIMEOUT_SECONDS = 40.0
_HEALTH_POLL_SECONDS = 0.25
_HEALTH_REQUEST_TIMEOUT_SECONDS = 2

# Local health probes must not be routed through an HTTP(S)_PROXY from the environment.
_LOCAL_OPENER = urllib.request.build_opener(urllib.request.ProxyHandler({}))


class ApiServerHarness:
    """Spawn a backend bound to one slot and track it through a pid file.

    ``persistent`` harnesses leave the process running on ``stop()``; the
    once-per-run cleanup sweep stops them through the pid file instead.
    """

    def __init__(
        self,
        *,
        command: Sequence[str],
        port: int,
        host: str = DEFAULT_HOST,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        database_url: str | None = None,
        pid_file_path: Path | None = None,
        log_path: Path | None = None,
        health_path: str = DEFAULT_HEALTH_PATH,
        startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS,
        reuse_healthy_server: bool = False,
        persistent: bool = False,
    ) -> None:
        if not command:
            raise ValueError("command_required")
        self.command = [str(part) for part in command]
        self.host = host
        self.port = int(port)
        self.cwd = cwd
        self.env = dict(env or {})
        self.database_url = database_url
        self.pid_file_path = Path(pid_file_path) if pid_file_path else None
        self.log_path = Path(log_path) if log_path else None
        self.health_path = health_path
        self.startup_timeout_seconds = startup_timeout_seconds
        self.reuse_healthy_server = reuse_healthy_server
        self.persistent = persistent
        self._process: subprocess.Popen | None = None
        self._log_handle = None

    @classmethod
    def for_slot(
        cls,
        command: Sequence[str],
        namespace: SlotNamespace,
        *,
        schema_context: SqlSchemaContext | None = None,
        **kwargs,
    ) -> "ApiServerHarness":
        if schema_context is None:
            schema_context = SqlSchemaContext(
                test_run_id=namespace.test_run_id, schema_prefix=namespace.schema_prefix
            )
        pid_file_path = namespace.pid_file_path
        kwargs.setdefault("log_path", pid_file_path.with_suffix(".log"))
        return cls(
            command=command,
            port=namespace.port,
            database_url=schema_context.schema_database_url,
            pid_file_path=pid_file_path,
            **kwargs,
        )

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.env)
        env["API_HOST"] = self.host
        env["API_PORT"] = str(self.port)
        if self.database_url:
            env["DATABASE_URL"] = self.database_url
        return env

    def read_output(self) -> str:
        if self.log_path is None or not self.log_path.exists():
            return ""
        return self.log_path.read_text(encoding="utf-8", errors="ignore")

    def _health_error(self) -> str | None:
        request = urllib.request.Request(f"{self.base_url}{self.health_path}", method="GET")
        try:
            with _LOCAL_OPENER.open(request, timeout=_HEALTH_REQUEST_TIMEOUT_SECONDS) as resp:
                if 200 <= resp.status < 300:
                    return None
                return f"health returned status {resp.status}"
        except urllib.error.HTTPError as exc:
            return f"health returned status {exc.code}"
        except (urllib.error.URLError, OSError) as exc:
            return str(getattr(exc, "reason", exc))

    def is_healthy(self) -> bool:
        return self._health_error() is None

    def _failure(self, headline: str, last_error: str | None = None) -> RuntimeError:
        parts = [headline]
        if last_error:
            parts.append(f"Last health error: {last_error}")
        output = self.read_output()
        parts.append(f"Process output:\n{output}" if output else "Process output was empty.")
        return RuntimeError("\n\n".join(parts))

    def wait_for_healthy(self) -> None:
        deadline = time.monotonic() + self.startup_timeout_seconds
        last_error = "unknown error"
        while time.monotonic() < deadline:
            if self._process is not None and self._process.poll() is not None:
                raise self._failure(
                    f"api_exited: process exited with {self._process.returncode} before {self.base_url} became healthy"
                )
            error = self._health_error()
            if error is None:
                return
            last_error = error
            time.sleep(_HEALTH_POLL_SECONDS)
        raise self._failure(
            f"api_unhealthy: {self.base_url} did not become healthy within {self.startup_timeout_seconds}s",
            last_error,
        )

    def start(self) -> None:
        if self._process is not None and self._process.poll() is None:
            return
        if self.reuse_healthy_server and self.is_healthy():
            logger.info("Reusing healthy backend at %s", self.base_url)
            return

        stdout = subprocess.DEVNULL
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_handle = self.log_path.open("w", encoding="utf-8")
            stdout = self._log_handle
        self._process = subprocess.Popen(
            self.command,
            cwd=str(self.cwd) if self.cwd else None,
            env=self._build_env(),
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.STDOUT,
            start_new_session=self.persistent,
        )
        if self.pid_file_path is not None:
            write_pid_file(self.pid_file_path, self._process.pid)
        logger.info("Started backend pid=%s on %s", self._process.pid, self.base_url)
        try:
            self.wait_for_healthy()
        except RuntimeError:
            self._terminate()
            raise

    def _terminate(self) -> None:
        process = self._process
        self._process = None
        if process is not None and process.poll() is None:
            if not stop_process(process.pid):
                logger.error("Backend pid=%s survived SIGKILL", process.pid)
            process.poll()
        if self.pid_file_path is not None:
            self.pid_file_path.unlink(missing_ok=True)
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def stop(self) -> None:
        if self.persistent:
            return
        self._terminate()
