from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from threading import Thread
from typing import Iterable

import click

from run_containerized.errors import BuildError, LaunchError, RunnerError


DOCKER_BINARY = "docker"
LOG_RELAY_JOIN_TIMEOUT_SECONDS = 5.0

LOGGER = logging.getLogger("run_containerized")


def docker_available() -> bool:
    return shutil.which(DOCKER_BINARY) is not None


def _last_line(text: str | None) -> str:
    lines = [line.strip() for line in str(text or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""


def build_image(tag: str, context_dir: Path) -> str:
    """Build ``context_dir`` as ``tag`` and return the resulting image id.

    Build diagnostics go straight to the invoker's stderr; with ``--quiet``
    docker prints only the image id on stdout.
    """
    cmd = [DOCKER_BINARY, "build", "--quiet", "--tag", tag, str(context_dir)]
    LOGGER.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, check=False, stdout=subprocess.PIPE, text=True)
    except OSError as exc:
        raise BuildError(f"Unable to run docker build: {exc}") from exc
    if result.returncode != 0:
        raise BuildError(f"Image build failed with exit code {result.returncode}: {context_dir}")
    image_id = _last_line(result.stdout)
    if not image_id:
        raise BuildError(f"Image build for '{tag}' produced no image id")
    LOGGER.debug("Built image %s as %s", image_id, tag)
    return image_id


def start_container(
    image_id: str,
    run_flags: Iterable[str],
    command: Iterable[str],
    *,
    name: str | None = None,
) -> str:
    cmd = [DOCKER_BINARY, "run", "--detach"]
    if name:
        cmd.extend(["--name", name])
    cmd.extend([*run_flags, image_id, *command])
    LOGGER.debug("Running %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, check=False, text=True, capture_output=True)
    except OSError as exc:
        raise LaunchError(f"Unable to run docker run: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise LaunchError(f"Container start failed with exit code {result.returncode}: {detail}")
    container_id = _last_line(result.stdout)
    if not container_id:
        raise LaunchError(f"docker run did not report a container id for image {image_id}")
    return container_id


def attach_container(container_id: str) -> int:
    result = subprocess.run([DOCKER_BINARY, "attach", container_id], check=False)
    return result.returncode


def wait_container(container_id: str) -> int:
    result = subprocess.run(
        [DOCKER_BINARY, "wait", container_id],
        check=False,
        text=True,
        capture_output=True,
    )
    if result.returncode != 0:
        detail = (result.stderr or "").strip()
        raise RunnerError(f"docker wait failed for container {container_id}: {detail}")
    status = _last_line(result.stdout)
    try:
        return int(status)
    except ValueError as exc:
        raise RunnerError(f"docker wait returned an invalid exit code: {status!r}") from exc


def remove_container(container_id: str) -> None:
    subprocess.run(
        [DOCKER_BINARY, "rm", "--force", container_id],
        check=False,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


class LogRelay:
    """Copies ``docker logs --follow`` output to stdout from a daemon thread.

    Streaming is best effort: the relay ends on its own once the container
    stops and docker closes the stream.
    """

    def __init__(self, container_id: str) -> None:
        self.container_id = container_id
        self._process: subprocess.Popen[str] | None = None
        self._thread: Thread | None = None

    def start(self) -> None:
        try:
            self._process = subprocess.Popen(
                [DOCKER_BINARY, "logs", "--follow", self.container_id],
                text=True,
                encoding="utf-8",
                errors="replace",
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=1,
            )
        except OSError as exc:
            LOGGER.warning("Unable to stream logs for container %s: %s", self.container_id, exc)
            return
        self._thread = Thread(target=self._relay_loop, daemon=True)
        self._thread.start()

    def _relay_loop(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            return
        stdout = process.stdout
        for line in iter(stdout.readline, ""):
            click.echo(line, nl=False)
        stdout.close()
        process.wait()

    def stop(self, timeout: float = LOG_RELAY_JOIN_TIMEOUT_SECONDS) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
        process = self._process
        if process is not None and process.poll() is None:
            LOGGER.debug("Log relay for %s still running, terminating it", self.container_id)
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
