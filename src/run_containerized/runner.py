from __future__ import annotations

import logging
import signal
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import click

from run_containerized.config import CONTAINER_WORKSPACE, JobConfig, load_job_config
from run_containerized.engine import (
    LOG_RELAY_JOIN_TIMEOUT_SECONDS,
    LogRelay,
    attach_container,
    build_image,
    docker_available,
    remove_container,
    start_container,
    wait_container,
)
from run_containerized.errors import ConfigurationError, JobAborted, RunnerError


INIT_HOOK_PATH = "/usr/local/bin/ci-init"
DRIVER_SCRIPT_NAME = "run-containerized"
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)

STATE_INIT = "init"
STATE_VALIDATING = "validating"
STATE_BUILDING = "building"
STATE_LAUNCHING = "launching"
STATE_RUNNING = "running"
STATE_SUCCESS = "success"
STATE_FAILED = "failed"
STATE_ABORTED = "aborted"

LOGGER = logging.getLogger("run_containerized")


def build_driver_script(config: JobConfig) -> str:
    return (
        f"if [ -x {INIT_HOOK_PATH} ]; then\n"
        f"  {INIT_HOOK_PATH} || exit $?\n"
        "fi\n"
        'bash -e -o pipefail -c "$1"\n'
        "status=$?\n"
        f"chown -R {config.host_uid}:{config.host_gid} {CONTAINER_WORKSPACE}\n"
        'exit "$status"\n'
    )


def driver_command(config: JobConfig) -> list[str]:
    """Container command: the driver script with the user command as ``$1``."""
    return ["bash", "-c", build_driver_script(config), DRIVER_SCRIPT_NAME, config.command_string]


def container_name(config: JobConfig) -> str:
    return f"{config.image_tag}-{uuid.uuid4().hex[:12]}"


class ContainerGuard:
    """Owns the container named ``name`` and removes it when the block exits.

    The name is fixed before ``docker run`` so the container can be removed
    even when the launch is interrupted before docker reports its id.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.container_id: str | None = None
        self._launched = False

    def __enter__(self) -> "ContainerGuard":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()

    def start(self, image_id: str, config: JobConfig) -> str:
        self._launched = True
        self.container_id = start_container(
            image_id,
            config.run_flags(),
            driver_command(config),
            name=self.name,
        )
        LOGGER.debug("Started container %s (%s) from image %s", self.name, self.container_id, image_id)
        return self.container_id

    def release(self) -> None:
        if not self._launched:
            return
        LOGGER.debug("Removing container %s", self.name)
        remove_container(self.name)
        self._launched = False
        self.container_id = None


@contextmanager
def _abort_on_termination_signals() -> Iterator[None]:
    aborting = False

    def _handler(signum: int, frame: Any) -> None:
        nonlocal aborting
        del frame
        # A second signal must not interrupt the cleanup started by the first.
        if aborting:
            return
        aborting = True
        raise JobAborted(signum)

    previous: dict[int, Any] = {}
    for signum in TERMINATION_SIGNALS:
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            LOGGER.debug("Cannot install handler for signal %s outside the main thread", signum)
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class JobRunner:
    def __init__(self) -> None:
        self.state = STATE_INIT

    def _transition(self, state: str) -> None:
        LOGGER.debug("Job state %s -> %s", self.state, state)
        self.state = state

    def validate(self, **options: Any) -> JobConfig:
        self._transition(STATE_VALIDATING)
        try:
            config = load_job_config(**options)
            if not docker_available():
                raise ConfigurationError("docker command not found in PATH")
            config.ensure_cache_dir()
        except ConfigurationError:
            self._transition(STATE_FAILED)
            raise
        return config

    def run(self, config: JobConfig) -> int:
        try:
            with _abort_on_termination_signals(), ContainerGuard(container_name(config)) as guard:
                self._transition(STATE_BUILDING)
                click.echo(f"Building image '{config.image_tag}' from {config.context_dir}", err=True)
                image_id = build_image(config.image_tag, config.context_dir)

                self._transition(STATE_LAUNCHING)
                container_id = guard.start(image_id, config)

                self._transition(STATE_RUNNING)
                exit_code = self._follow(container_id, interactive=config.interactive)
        except KeyboardInterrupt as exc:
            self._transition(STATE_ABORTED)
            raise JobAborted(signal.SIGINT) from exc
        except JobAborted:
            self._transition(STATE_ABORTED)
            raise
        except RunnerError:
            self._transition(STATE_FAILED)
            raise

        self._transition(STATE_SUCCESS if exit_code == 0 else STATE_FAILED)
        return exit_code

    def _follow(self, container_id: str, *, interactive: bool) -> int:
        relay = LogRelay(container_id)
        relay.start()
        finished = False
        try:
            if interactive:
                attach_container(container_id)
            exit_code = wait_container(container_id)
            finished = True
        finally:
            relay.stop(LOG_RELAY_JOIN_TIMEOUT_SECONDS if finished else 0)
        return exit_code
