from __future__ import annotations

import contextlib
import json
import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import IO, Callable

from .audit import mask_secrets
from .models import FailMode, SandboxCapabilities, SandboxConfig, SandboxMethod, SandboxResult

logger = logging.getLogger(__name__)

LogSink = Callable[[str, str], None]
"""Receives ``(stream, line)`` for every stdout/stderr line, ``stream`` being "stdout" or "stderr"."""

TIMEOUT_EXIT_CODE = 137
NO_COMMAND_FALLBACK = 'echo "No test command found"'
NPM_DEFAULT_TEST_SCRIPT = 'echo "Error: no test specified" && exit 1'

# Marker files in detection order; tsconfig.json wins over package.json.
LANGUAGE_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("typescript", ("tsconfig.json",)),
    ("javascript", ("package.json",)),
    ("python", ("requirements.txt", "pyproject.toml", "setup.py")),
    ("go", ("go.mod", "go.sum")),
    ("rust", ("Cargo.toml",)),
    ("java", ("pom.xml", "build.gradle")),
    ("ruby", ("Gemfile",)),
    ("php", ("composer.json",)),
)

TEST_PRESETS: dict[str, str] = {
    "javascript": "npm test",
    "typescript": "npm test",
    "python": "pytest",
    "go": "go test ./...",
    "rust": "cargo test",
    "java": "mvn test",
    "ruby": "bundle exec rspec",
    "php": "vendor/bin/phpunit",
}

CONTAINER_IMAGES: dict[str, str] = {
    "javascript": "node:20-alpine",
    "typescript": "node:20-alpine",
    "python": "python:3.11-slim",
    "go": "golang:1.21-alpine",
    "rust": "rust:1.75-slim",
    "java": "maven:3.9-eclipse-temurin-21",
    "ruby": "ruby:3.2-slim",
    "php": "php:8.2-cli",
}
DEFAULT_CONTAINER_IMAGE = "node:20-alpine"

_DETECT_TIMEOUT_SECONDS = 10
_READER_JOIN_SECONDS = 2.0


def detect_language(repo_path: Path) -> str | None:
    for language, markers in LANGUAGE_MARKERS:
        if any((repo_path / marker).exists() for marker in markers):
            return language
    return None


def _declared_npm_test_script(repo_path: Path) -> str | None:
    package_json = repo_path / "package.json"
    if not package_json.is_file():
        return None
    try:
        manifest = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        logger.warning("Could not read %s; falling back to the language preset", package_json)
        return None
    scripts = manifest.get("scripts") if isinstance(manifest, dict) else None
    script = scripts.get("test") if isinstance(scripts, dict) else None
    if isinstance(script, str) and script.strip() and script.strip() != NPM_DEFAULT_TEST_SCRIPT:
        return script
    return None


def resolve_test_command(repo_path: Path, language_hint: str | None = None) -> str | None:
    """Pick the test command for a checkout: a declared npm script first, then the language preset."""
    language = (language_hint or "").strip().lower() or detect_language(repo_path)
    if language is None or language not in TEST_PRESETS:
        return None
    if language in {"javascript", "typescript"} and _declared_npm_test_script(repo_path) is not None:
        return "npm test"
    return TEST_PRESETS[language]


def detect_container_runtime(runtime: str) -> bool:
    try:
        completed = subprocess.run(
            [runtime, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=_DETECT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return completed.returncode == 0


class SandboxRunner:
    """Runs validation commands under the strongest isolation tier available.

    Tier preference is container, then scripted shell (a pre-vetted runner
    script), then native host execution. Every tier enforces the configured
    wall-clock timeout by killing the whole process group, and forwards output
    lines to the log sink while the process is still running.

    ``container_runtime=None`` disables the container tier outright;
    ``runtime_check`` replaces the default ``<runtime> version`` check.
    """

    def __init__(
        self,
        *,
        container_runtime: str | None = "docker",
        runtime_check: Callable[[str], bool] | None = None,
        log_sink: LogSink | None = None,
    ) -> None:
        self.container_runtime = container_runtime or None
        self._runtime_check = runtime_check or detect_container_runtime
        self._log_sink = log_sink
        self._detect_lock = threading.Lock()
        self._container_available: bool | None = None

    def container_available(self) -> bool:
        if self.container_runtime is None:
            return False
        with self._detect_lock:
            if self._container_available is None:
                self._container_available = self._runtime_check(self.container_runtime)
                logger.info(
                    "Container runtime %s available: %s", self.container_runtime, self._container_available
                )
            return self._container_available

    @staticmethod
    def _scripted_shell_available(runner_path: str | None) -> bool:
        return bool(runner_path) and os.name == "posix" and Path(runner_path).is_file()

    def capabilities(self, runner_path: str | None = None) -> SandboxCapabilities:
        container = self.container_available()
        scripted_shell = self._scripted_shell_available(runner_path)
        if container:
            recommended = SandboxMethod.CONTAINER
        elif scripted_shell:
            recommended = SandboxMethod.SCRIPTED_SHELL
        else:
            recommended = SandboxMethod.NATIVE
        return SandboxCapabilities(container=container, scripted_shell=scripted_shell, recommended=recommended)

    def run(self, config: SandboxConfig, log_sink: LogSink | None = None) -> SandboxResult:
        sink = log_sink or self._log_sink
        if not config.enabled:
            logger.debug("Sandbox disabled; skipping validation run")
            return SandboxResult(
                success=True,
                exit_code=0,
                stdout="Sandbox disabled",
                stderr="",
                duration_ms=0,
                method=SandboxMethod.NATIVE,
            )

        repo_path = Path(config.repo_path).expanduser().resolve()
        command = config.command or resolve_test_command(repo_path, config.language_hint) or NO_COMMAND_FALLBACK

        if self.container_available():
            result = self._run_container(config, repo_path, command, sink)
        elif self._scripted_shell_available(config.runner_path):
            result = self._run_scripted_shell(config, repo_path, command, sink)
        else:
            logger.warning("Sandbox running natively WITHOUT isolation in %s: %s", repo_path, command)
            result = self._spawn(
                ["/bin/sh", "-c", command],
                cwd=repo_path,
                env=None,
                timeout_ms=config.timeout_ms,
                method=SandboxMethod.NATIVE,
                sink=sink,
            )

        if not result.success and config.fail_mode == FailMode.WARN:
            logger.warning(
                "Sandbox validation failed (exit %s) but fail_mode=warn; continuing", result.exit_code
            )
            result = result.model_copy(update={"success": True})
        return result

    def _run_container(
        self, config: SandboxConfig, repo_path: Path, command: str, sink: LogSink | None
    ) -> SandboxResult:
        language = (config.language_hint or "").strip().lower() or detect_language(repo_path)
        image = CONTAINER_IMAGES.get(language or "", DEFAULT_CONTAINER_IMAGE)
        name = f"remediation-sandbox-{uuid.uuid4().hex[:12]}"
        args = [
            self.container_runtime,
            "run",
            "--rm",
            f"--name={name}",
            "--network=none",
            "--memory=512m",
            "--cpus=1",
            "--read-only",
            "--tmpfs=/tmp:rw,noexec,nosuid,size=100m",
            f"-v={repo_path}:/workspace:ro",
            "-w=/workspace",
            image,
            "/bin/sh",
            "-c",
            command,
        ]
        logger.info("Sandbox container %s (image %s): %s", name, image, command)
        return self._spawn(
            args,
            cwd=None,
            env=None,
            timeout_ms=config.timeout_ms,
            method=SandboxMethod.CONTAINER,
            sink=sink,
            container_name=name,
        )

    def _run_scripted_shell(
        self, config: SandboxConfig, repo_path: Path, command: str, sink: LogSink | None
    ) -> SandboxResult:
        runner_path = str(config.runner_path)
        env = dict(os.environ)
        env.update(
            {
                "SANDBOX_REPO_PATH": str(repo_path),
                "SANDBOX_COMMAND": command,
                "SANDBOX_TIMEOUT_MS": str(config.timeout_ms),
            }
        )
        logger.info("Sandbox scripted shell %s: %s", runner_path, command)
        return self._spawn(
            ["bash", runner_path],
            cwd=None,
            env=env,
            timeout_ms=config.timeout_ms,
            method=SandboxMethod.SCRIPTED_SHELL,
            sink=sink,
        )

    def _spawn(
        self,
        args: list[str],
        *,
        cwd: Path | None,
        env: dict[str, str] | None,
        timeout_ms: int,
        method: SandboxMethod,
        sink: LogSink | None,
        container_name: str | None = None,
    ) -> SandboxResult:
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Sandbox %s failed to start: %s", method.value, exc)
            return SandboxResult(
                success=False,
                exit_code=1,
                stdout="",
                stderr=str(exc),
                duration_ms=_elapsed_ms(started),
                method=method,
                error=str(exc),
            )

        out_chunks: list[str] = []
        err_chunks: list[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out_chunks, "stdout", sink), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err_chunks, "stderr", sink), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            exit_code = proc.wait(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            with contextlib.suppress(ProcessLookupError):
                os.killpg(proc.pid, signal.SIGKILL)
            proc.wait()
            exit_code = TIMEOUT_EXIT_CODE
            if container_name is not None:
                self._kill_container(container_name)

        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
        duration_ms = _elapsed_ms(started)

        if timed_out:
            logger.warning("Sandbox %s timed out after %d ms", method.value, duration_ms)
            return SandboxResult(
                success=False,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout="".join(out_chunks),
                stderr="".join(err_chunks),
                duration_ms=duration_ms,
                method=method,
                error="Timeout exceeded",
            )
        if exit_code < 0:
            # Terminated by a signal; report it the way a shell would.
            exit_code = 128 - exit_code
        return SandboxResult(
            success=exit_code == 0,
            exit_code=exit_code,
            stdout="".join(out_chunks),
            stderr="".join(err_chunks),
            duration_ms=duration_ms,
            method=method,
        )

    def _kill_container(self, name: str) -> None:
        try:
            subprocess.run(
                [self.container_runtime, "kill", name],
                capture_output=True,
                timeout=_DETECT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Could not kill timed-out sandbox container %s: %s", name, exc)


def _pump(src: IO[str] | None, chunks: list[str], stream: str, sink: LogSink | None) -> None:
    if src is None:
        return
    try:
        for line in iter(src.readline, ""):
            chunks.append(line)
            if sink is not None:
                try:
                    sink(stream, mask_secrets(line.rstrip("\n")))
                except Exception:  # noqa: BLE001 - a broken sink must not stall the pipe.
                    logger.warning("Sandbox log sink raised; dropping line", exc_info=True)
    finally:
        with contextlib.suppress(Exception):
            src.close()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
