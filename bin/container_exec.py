#!/usr/bin/env python3
"""
Plan, build and run containerized samtools invocations.

Holds the error types shared by the wrapper scripts, execution method
detection, output path derivation, construction of the container argument
list (bind mounts, template tokens, redirections) and the process runner that
checks every stage of a pipeline.
"""

###########
# IMPORTS #
###########

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Sequence

from tool_profiles import ToolProfile

logger = logging.getLogger(__name__)

#############
# CONSTANTS #
#############

SORT_ORDERS = ("coordinate", "queryname")
QUERYNAME_FLAG = "-n"
STDERR_SUFFIX = "-samtools-sort.stderr"
LOG_DIRNAME = "_log"
TMP_DIRNAME = "_tmp"
CONTAINER_MOUNT_PREFIX = "/data"

##########
# ERRORS #
##########

class BamSortError(RuntimeError):
    """Base error carrying the process exit code to terminate with."""

    exit_code = 1

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code

class UsageError(BamSortError):
    """Malformed (exit 2) or unrecognized (exit 3) command-line flags."""

    exit_code = 2

class ValidationError(BamSortError):
    """Missing or invalid values, unstaged input, undetectable runtime."""

    exit_code = 1

class CommandError(BamSortError):
    """An invoked command returned non-zero."""

    def __init__(self, command: str, returncode: int, stage_index: int = 0):
        self.command = command
        self.returncode = returncode
        self.stage_index = stage_index
        super().__init__(
            f"Error when executing command '{command}' "
            f"(stage {stage_index} exited with code {returncode})",
            exit_code=returncode,
        )

##############
# PLAN TYPES #
##############

@dataclass(frozen=True)
class ResolvedPaths:
    """Absolute locations derived from the staged input and --output."""

    input_full: Path
    input_dir: Path
    input_base: str
    output_full: Path
    output_dir: Path
    output_base: str
    log_dir: Path
    sorted_bam: Path
    stderr_log: Path
    tmp_dir: Path | None = None

    @property
    def directories(self) -> list[Path]:
        """Directories to create before running, in creation order."""
        dirs = [self.output_dir, self.log_dir]
        if self.tmp_dir is not None:
            dirs.append(self.tmp_dir)
        return dirs

    def template_values(self) -> dict[str, str]:
        """Values for the placeholders of a profile command template."""
        return {
            "input": str(self.input_full),
            "input_dir": str(self.input_dir),
            "input_base": self.input_base,
            "output": str(self.output_full),
            "output_dir": str(self.output_dir),
            "output_base": self.output_base,
            "log_dir": str(self.log_dir),
            "tmp_dir": str(self.tmp_dir) if self.tmp_dir is not None else "",
        }

@dataclass(frozen=True)
class MountSpec:
    host_path: Path
    container_path: str

    def as_bind(self) -> str:
        return f"{self.host_path}:{self.container_path}"

@dataclass(frozen=True)
class ExecutionPlan:
    """A fully resolved container invocation, built once and run once."""

    backend: str
    argv: tuple[str, ...]
    stdout_path: Path
    stderr_path: Path
    directories: tuple[Path, ...] = ()
    mounts: tuple[MountSpec, ...] = ()

    def render(self) -> str:
        """Shell-style rendering of the plan, for logs only."""
        return (
            f"{shlex.join(self.argv)} "
            f">{shlex.quote(str(self.stdout_path))} "
            f"2>{shlex.quote(str(self.stderr_path))}"
        )

######################
# EXECUTION PLANNING #
######################

def validate_exec_method(requested: str, profile: ToolProfile) -> None:
    """
    Check that a requested execution method is supported by a profile.
    Args:
        requested (str): Value of --exec_method
        profile (ToolProfile): Active tool profile
    """
    if requested not in profile.exec_methods:
        msg = f"Invalid execution method: {requested}"
        logger.error(msg)
        raise ValidationError(msg)

def detect_exec_method(
    requested: str,
    profile: ToolProfile,
    search_path: str | None = None,
) -> str:
    """
    Resolve the execution method, probing PATH when 'auto' is requested.
    Args:
        requested (str): Value of --exec_method
        profile (ToolProfile): Active tool profile
        search_path (str | None): PATH to search (default: process PATH)
    Returns:
        str: Concrete container backend
    """
    validate_exec_method(requested, profile)
    if requested != "auto":
        return requested
    if shutil.which(profile.backend, path=search_path) is None:
        msg = "Valid execution method not detected"
        logger.error(msg)
        raise ValidationError(msg)
    logger.info(f"Detected Execution Method: {profile.backend}")
    return profile.backend

def resolve_paths(input_full: Path, output: str, profile: ToolProfile) -> ResolvedPaths:
    """
    Derive absolute output, log and temporary locations.

    Directory profiles treat --output as a directory holding
    <output_base>.bam and the _log subdirectory. File profiles write the
    sorted BAM to --output itself, with _log and _tmp beside it.
    Args:
        input_full (Path): Absolute path of the staged input BAM
        output (str): Value of --output
        profile (ToolProfile): Active tool profile
    Returns:
        ResolvedPaths: Derived locations
    """
    output_full = Path(output).expanduser().resolve()
    output_base = output_full.name
    if profile.writes_directory:
        output_dir = output_full
        sorted_bam = output_full / f"{output_base}.bam"
    else:
        output_dir = output_full.parent
        sorted_bam = output_full
    log_dir = output_dir / LOG_DIRNAME
    return ResolvedPaths(
        input_full=input_full,
        input_dir=input_full.parent,
        input_base=input_full.name,
        output_full=output_full,
        output_dir=output_dir,
        output_base=output_base,
        log_dir=log_dir,
        sorted_bam=sorted_bam,
        stderr_log=log_dir / f"{output_base}{STDERR_SUFFIX}",
        tmp_dir=output_dir / TMP_DIRNAME if profile.create_tmp_dir else None,
    )

####################
# COMMAND BUILDING #
####################

def expand_command_template(
    template: Sequence[str],
    values: Mapping[str, str],
) -> tuple[list[str], list[MountSpec]]:
    """
    Substitute placeholders and turn ^-prefixed host paths into mounts.

    Each ^ token is resolved to an absolute host path; its parent directory
    is mounted at /data<N> (N counts ^ tokens from 1) and the token becomes
    /data<N>/<basename>.
    Args:
        template (Sequence[str]): Command template tokens
        values (Mapping[str, str]): Placeholder values
    Returns:
        tuple[list[str], list[MountSpec]]: Container-side argv and mounts
    """
    argv = []
    mounts = []
    for token in template:
        if not token.startswith("^"):
            argv.append(token.format(**values))
            continue
        host_path = Path(token[1:].format(**values)).resolve()
        container_dir = f"{CONTAINER_MOUNT_PREFIX}{len(mounts) + 1}"
        mounts.append(MountSpec(host_path.parent, container_dir))
        argv.append(f"{container_dir}/{host_path.name}")
    return argv, mounts

def container_argv(
    backend: str,
    image: str,
    mounts: Sequence[MountSpec],
    command: Sequence[str],
) -> list[str]:
    """
    Wrap a command in a container runtime invocation.
    Args:
        backend (str): 'singularity' or 'docker'
        image (str): Container image reference
        mounts (Sequence[MountSpec]): Host directories to bind
        command (Sequence[str]): Command to run inside the container
    Returns:
        list[str]: Full argument list
    """
    if backend == "singularity":
        argv = ["singularity", "-s", "exec"]
        bind_flag = "-B"
    elif backend == "docker":
        argv = ["docker", "run", "--rm"]
        bind_flag = "-v"
    else:
        msg = f"Invalid execution method: {backend}"
        logger.error(msg)
        raise ValidationError(msg)
    for mount in mounts:
        argv.extend([bind_flag, mount.as_bind()])
    argv.append(image)
    argv.extend(command)
    return argv

def build_execution_plan(
    profile: ToolProfile,
    backend: str,
    paths: ResolvedPaths,
    sort_order: str,
) -> ExecutionPlan:
    """
    Build the container invocation for one sort.
    Args:
        profile (ToolProfile): Active tool profile
        backend (str): Resolved execution method
        paths (ResolvedPaths): Derived locations
        sort_order (str): 'coordinate' or 'queryname'
    Returns:
        ExecutionPlan: Invocation descriptor
    """
    if sort_order not in SORT_ORDERS:
        msg = f"Invalid sort order: {sort_order}"
        logger.error(msg)
        raise ValidationError(msg)
    command, mounts = expand_command_template(profile.command, paths.template_values())
    if sort_order == "queryname":
        command.append(QUERYNAME_FLAG)
    return ExecutionPlan(
        backend=backend,
        argv=tuple(container_argv(backend, profile.image, mounts, command)),
        stdout_path=paths.sorted_bam,
        stderr_path=paths.stderr_log,
        directories=tuple(paths.directories),
        mounts=tuple(mounts),
    )

#####################
# COMMAND EXECUTION #
#####################

def normalize_returncode(returncode: int) -> int:
    """Map a signal-terminated child (negative code) to the shell's 128+N."""
    return 128 - returncode if returncode < 0 else returncode

def check_pipeline_status(command: str, returncodes: Sequence[int]) -> None:
    """
    Raise on the first pipeline stage with a non-zero status.
    Args:
        command (str): Literal command, for the error message
        returncodes (Sequence[int]): Status of each stage, in pipeline order
    """
    for stage_index, returncode in enumerate(returncodes):
        if returncode != 0:
            error = CommandError(command, normalize_returncode(returncode), stage_index)
            logger.error(str(error))
            raise error

def run_pipeline(
    stages: Sequence[Sequence[str]],
    stdout: IO | None = None,
    stderr: IO | None = None,
    env: Mapping[str, str] | None = None,
) -> list[int]:
    """
    Run commands connected stdout-to-stdin and check every stage.
    Args:
        stages (Sequence[Sequence[str]]): Argument list of each stage
        stdout (IO | None): Destination of the last stage's stdout
        stderr (IO | None): Destination of every stage's stderr
        env (Mapping[str, str] | None): Environment for the children
    Returns:
        list[int]: Status of each stage (all zero)
    """
    command = " | ".join(shlex.join(argv) for argv in stages)
    processes = []
    upstream = None
    try:
        for stage_index, argv in enumerate(stages):
            is_last = stage_index == len(stages) - 1
            try:
                process = subprocess.Popen(
                    list(argv),
                    stdin=upstream,
                    stdout=stdout if is_last else subprocess.PIPE,
                    stderr=stderr,
                    env=env,
                )
            except OSError as e:
                msg = f"Error when executing command '{command}': {e}"
                logger.error(msg)
                raise CommandError(command, 127, stage_index) from e
            if upstream is not None:
                # Let the upstream stage receive SIGPIPE if this one exits early
                upstream.close()
            upstream = process.stdout
            processes.append(process)
    finally:
        if upstream is not None:
            upstream.close()
        returncodes = [process.wait() for process in processes]
    check_pipeline_status(command, returncodes)
    return returncodes

def parse_environment(raw: bytes) -> dict[str, str]:
    """Parse NUL-separated `env -0` output into a mapping."""
    environment = {}
    for entry in raw.decode(errors="replace").split("\0"):
        if "=" in entry:
            key, value = entry.split("=", 1)
            environment[key] = value
    return environment

def run_shell_command(
    command: str,
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Run a shell command string, checking every stage of its final pipeline.

    The environment left behind by the command (e.g. after `module load`) is
    returned so that later steps see it.
    Args:
        command (str): Shell command (e.g. --exec_init)
        env (Mapping[str, str] | None): Environment to start from
    Returns:
        dict[str, str]: Environment after the command ran
    """
    base_env = dict(env) if env is not None else dict(os.environ)
    if not command.strip():
        return base_env
    with tempfile.TemporaryDirectory() as tmpdir:
        status_file = Path(tmpdir) / "pipestatus"
        env_file = Path(tmpdir) / "environment"
        script = (
            command + "\n"
            + 'bam_sort_status="${PIPESTATUS[*]}"\n'
            + "env -0 > " + shlex.quote(str(env_file)) + "\n"
            + 'echo "$bam_sort_status" > ' + shlex.quote(str(status_file)) + "\n"
        )
        result = subprocess.run(["bash", "-c", script], env=env)
        if status_file.exists():
            returncodes = [int(code) for code in status_file.read_text().split()]
        else:
            # The command exited the shell itself
            returncodes = [result.returncode]
        check_pipeline_status(command, returncodes)
        if env_file.exists():
            return parse_environment(env_file.read_bytes())
    return base_env

def prepare_directories(directories: Sequence[Path]) -> None:
    """Create output directories; existing directories are left alone."""
    for directory in directories:
        logger.info(f"Creating directory: {directory}")
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Error creating directory {directory}: {e}"
            logger.error(msg)
            raise BamSortError(msg) from e

def run_plan(plan: ExecutionPlan, env: Mapping[str, str] | None = None) -> None:
    """
    Create the plan's directories and run its container invocation.
    Args:
        plan (ExecutionPlan): Invocation descriptor
        env (Mapping[str, str] | None): Environment for the container runtime
    """
    prepare_directories(plan.directories)
    logger.info(f"CMD={plan.render()}")
    with open(plan.stdout_path, "wb") as out, open(plan.stderr_path, "wb") as err:
        run_pipeline([plan.argv], stdout=out, stderr=err, env=env)
    logger.info(f"Sorted BAM written to {plan.stdout_path}")
