from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from run_containerized.errors import ConfigurationError


DEFAULT_CONTEXT_SUBPATH = "ci/docker"
DOCKERFILE_NAME = "Dockerfile"
DEFAULT_TAG = "job"
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_CACHE = "/cache"
CONTAINER_SSH_AUTH_SOCK = "/run/ssh-agent.sock"
CONTAINER_XAUTHORITY = "/tmp/.Xauthority"
X11_SOCKET_DIR = "/tmp/.X11-unix"


def _default_cache_root() -> Path:
    return Path.home() / ".cache" / "run-containerized"


def _collapse_separator_run(match: re.Match[str]) -> str:
    run = match.group(0)
    # docker accepts ".", "_", "__" or any number of "-" between alphanumerics.
    if run in {".", "_", "__"} or set(run) == {"-"}:
        return run
    return "-"


def normalize_image_tag(job_name: str) -> str:
    sanitized = re.sub(r"[^a-z0-9_.-]", "-", str(job_name or "").lower())
    sanitized = re.sub(r"[-_.]+", _collapse_separator_run, sanitized)
    sanitized = sanitized.strip("-_.")
    return sanitized or DEFAULT_TAG


def _to_absolute(value: str, base: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def _parse_env_var(spec: str, label: str) -> str:
    if "=" not in spec:
        raise ConfigurationError(f"Invalid {label}: {spec} (expected KEY=VALUE)")
    key, value = spec.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigurationError(f"Invalid {label}: {spec} (empty key)")
    if any(ch.isspace() for ch in key):
        raise ConfigurationError(f"Invalid {label}: {spec} (key must not contain whitespace)")
    return f"{key}={value}"


def _split_engine_options(raw_value: str | None) -> list[str]:
    value = str(raw_value or "").strip()
    if not value:
        return []
    try:
        return shlex.split(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid extra docker options {value!r}: {exc}") from exc


def _ssh_agent_flags(env: Mapping[str, str]) -> list[str]:
    socket_path = str(env.get("SSH_AUTH_SOCK", "")).strip()
    if not socket_path or not Path(socket_path).exists():
        return []
    return [
        "--volume",
        f"{socket_path}:{CONTAINER_SSH_AUTH_SOCK}",
        "--env",
        f"SSH_AUTH_SOCK={CONTAINER_SSH_AUTH_SOCK}",
    ]


def _x11_flags(env: Mapping[str, str]) -> list[str]:
    display = str(env.get("DISPLAY", "")).strip()
    if not display:
        return []
    flags = [
        "--volume",
        f"{X11_SOCKET_DIR}:{X11_SOCKET_DIR}",
        "--env",
        f"DISPLAY={display}",
    ]
    xauthority = str(env.get("XAUTHORITY", "")).strip()
    if xauthority and Path(xauthority).is_file():
        flags.extend(
            [
                "--volume",
                f"{xauthority}:{CONTAINER_XAUTHORITY}:ro",
                "--env",
                f"XAUTHORITY={CONTAINER_XAUTHORITY}",
            ]
        )
    return flags


@dataclass(frozen=True)
class JobConfig:
    """Everything one invocation needs, resolved up front.

    ``engine_flags`` holds the optional ``docker run`` flags accumulated from
    the caller (privileged mode, SSH agent and X11 forwarding, extra options
    and extra environment). The fixed mounts and markers are added by
    :meth:`run_flags`.
    """

    job_name: str
    workspace: Path
    image_tag: str
    context_dir: Path
    cache_dir: Path
    command: tuple[str, ...]
    privileged: bool = False
    engine_flags: tuple[str, ...] = field(default_factory=tuple)
    host_uid: int = 0
    host_gid: int = 0

    @property
    def interactive(self) -> bool:
        return self.command == ("bash",)

    @property
    def command_string(self) -> str:
        return " ".join(self.command)

    def ensure_cache_dir(self) -> Path:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Unable to create cache directory {self.cache_dir}: {exc}") from exc
        return self.cache_dir

    def run_flags(self) -> list[str]:
        flags = [
            "--volume",
            f"{self.workspace}:{CONTAINER_WORKSPACE}",
            "--volume",
            f"{self.cache_dir}:{CONTAINER_CACHE}",
            "--workdir",
            CONTAINER_WORKSPACE,
            "--env",
            "CI=true",
            "--env",
            f"CI_WORKSPACE={CONTAINER_WORKSPACE}",
            "--env",
            f"CI_CACHE={CONTAINER_CACHE}",
            "--env",
            f"CI_JOB_NAME={self.job_name}",
        ]
        flags.extend(self.engine_flags)
        if self.interactive:
            flags.extend(["--interactive", "--tty"])
        return flags


def load_job_config(
    *,
    job_name: str | None,
    workspace: str | None,
    command: Iterable[str],
    privileged: bool = False,
    cache_dir: str | None = None,
    docker_context: str | None = None,
    docker_opts: str | None = None,
    env_vars: Iterable[str] = (),
    env: Mapping[str, str] | None = None,
) -> JobConfig:
    source = os.environ if env is None else env

    resolved_job_name = str(job_name or "").strip()
    if not resolved_job_name:
        raise ConfigurationError("JOB_NAME is not set")
    workspace_value = str(workspace or "").strip()
    if not workspace_value:
        raise ConfigurationError("WORKSPACE is not set")

    workspace_path = _to_absolute(workspace_value, Path.cwd())
    if not workspace_path.is_dir():
        raise ConfigurationError(f"Workspace directory does not exist: {workspace_path}")

    image_tag = normalize_image_tag(resolved_job_name)

    cache_value = str(cache_dir or "").strip()
    if cache_value:
        cache_root = _to_absolute(cache_value, Path.cwd())
        if not cache_root.is_dir():
            raise ConfigurationError(f"Cache directory does not exist: {cache_root}")
    else:
        cache_root = _default_cache_root()

    context_value = str(docker_context or "").strip() or DEFAULT_CONTEXT_SUBPATH
    context_dir = _to_absolute(context_value, workspace_path)
    if not context_dir.is_dir():
        raise ConfigurationError(f"Docker build context does not exist: {context_dir}")
    if not (context_dir / DOCKERFILE_NAME).is_file():
        raise ConfigurationError(f"No {DOCKERFILE_NAME} in docker build context: {context_dir}")

    command_args = tuple(str(arg) for arg in command)
    if not command_args:
        raise ConfigurationError("No command given")

    engine_flags: list[str] = []
    if privileged:
        engine_flags.append("--privileged")
    engine_flags.extend(_ssh_agent_flags(source))
    engine_flags.extend(_x11_flags(source))
    engine_flags.extend(_split_engine_options(docker_opts))
    for entry in env_vars:
        engine_flags.extend(["--env", _parse_env_var(entry, "--env-var")])

    return JobConfig(
        job_name=resolved_job_name,
        workspace=workspace_path,
        image_tag=image_tag,
        context_dir=context_dir,
        cache_dir=cache_root / image_tag,
        command=command_args,
        privileged=privileged,
        engine_flags=tuple(engine_flags),
        host_uid=os.getuid(),
        host_gid=os.getgid(),
    )
