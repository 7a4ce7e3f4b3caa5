from __future__ import annotations

import logging
import sys

import click

from run_containerized.runner import JobRunner


LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")
DEFAULT_LOG_LEVEL = "warning"

LOGGER = logging.getLogger("run_containerized")
LOGGER.addHandler(logging.NullHandler())


def _normalize_log_level(value: str | None) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in LOG_LEVEL_CHOICES:
        return normalized
    return DEFAULT_LOG_LEVEL


def _configure_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.WARNING))
    LOGGER.propagate = False


def _print_banner(job_name: str, exit_code: int) -> None:
    if exit_code == 0:
        click.secho(f"==> {job_name}: SUCCESS", fg="green", bold=True, err=True)
    else:
        click.secho(f"==> {job_name}: FAILED (exit code {exit_code})", fg="red", bold=True, err=True)


@click.command(
    help="Build the job's CI image and run COMMAND inside a container.",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.option("--privileged", is_flag=True, default=False, help="Run the container in privileged mode.")
@click.option("--job-name", envvar="JOB_NAME", default=None, help="CI job name; also names the image.")
@click.option("--workspace", envvar="WORKSPACE", default=None, help="Host workspace mounted at /workspace.")
@click.option(
    "--cache-dir",
    envvar="CI_CACHE_DIR",
    default=None,
    help="Existing cache root; a per-job subdirectory is mounted at /cache.",
)
@click.option(
    "--docker-context",
    envvar="CI_DOCKER_CONTEXT",
    default=None,
    help="Build context directory, absolute or relative to the workspace (default: ci/docker).",
)
@click.option("--docker-opts", envvar="CI_DOCKER_OPTS", default=None, help="Extra options passed to docker run.")
@click.option("--env-var", "env_vars", multiple=True, help="Additional container environment variable KEY=VALUE")
@click.option(
    "--log-level",
    envvar="CI_LOG_LEVEL",
    default=DEFAULT_LOG_LEVEL,
    show_default=True,
    type=click.Choice(LOG_LEVEL_CHOICES, case_sensitive=False),
)
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def main(
    ctx: click.Context,
    privileged: bool,
    job_name: str | None,
    workspace: str | None,
    cache_dir: str | None,
    docker_context: str | None,
    docker_opts: str | None,
    env_vars: tuple[str, ...],
    log_level: str,
    command: tuple[str, ...],
) -> None:
    _configure_logging(log_level)

    runner = JobRunner()
    config = runner.validate(
        job_name=job_name,
        workspace=workspace,
        command=command,
        privileged=privileged,
        cache_dir=cache_dir,
        docker_context=docker_context,
        docker_opts=docker_opts,
        env_vars=env_vars,
    )
    LOGGER.info("Running job %s in image %s", config.job_name, config.image_tag)

    exit_code = runner.run(config)
    _print_banner(config.job_name, exit_code)
    ctx.exit(exit_code)


if __name__ == "__main__":
    main()
