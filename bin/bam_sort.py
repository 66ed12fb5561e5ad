#!/usr/bin/env python3
DESC = """
Sort a BAM file with samtools running inside a container.

Stages the input BAM, detects the container runtime, and runs
`samtools sort` from quay.io/biocontainers/samtools, writing the sorted BAM
and a stderr log under the output location. Each option can be overridden by
a lowercase environment variable of the same name (e.g. `input`).
"""

###########
# IMPORTS #
###########

import argparse
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Sequence

from container_exec import (
    SORT_ORDERS,
    BamSortError,
    UsageError,
    ValidationError,
    build_execution_plan,
    detect_exec_method,
    resolve_paths,
    run_plan,
    run_shell_command,
    validate_exec_method,
)
from stage_input import stage_input
from tool_profiles import PROFILE_DIRNAME, ToolProfile, load_tool_profile

###########
# LOGGING #
###########

class UTCFormatter(logging.Formatter):
    """Custom logging formatter that displays timestamps in UTC."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format log timestamps in UTC timezone."""
        dt = datetime.fromtimestamp(record.created, timezone.utc)
        return dt.strftime("%Y-%m-%d %H:%M:%S UTC")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger()
handler = logging.StreamHandler()
formatter = UTCFormatter("[%(asctime)s] %(message)s")
handler.setFormatter(formatter)
logger.handlers.clear()
logger.addHandler(handler)

#############
# CONSTANTS #
#############

DEFAULT_PROFILE = "singularity"
OPTION_NAMES = ("input", "sort_order", "output", "exec_method", "exec_init")
UNKNOWN_OPTION_EXIT_CODE = 3

##########
# CONFIG #
##########

@dataclass(frozen=True)
class InvocationConfig:
    input: str
    sort_order: str
    output: str
    exec_method: str
    exec_init: str

def get_script_dir(environ: Mapping[str, str]) -> Path:
    """
    Locate the directory the wrapper runs from.
    Agave jobs stage the app into the working directory, so it is used
    instead of the install location when AGAVE_JOB_ID is set.
    """
    if environ.get("AGAVE_JOB_ID"):
        logger.info("Agave job detected")
        return Path.cwd()
    return Path(__file__).resolve().parent

###################
# ARGUMENT PARSER #
###################

class WrapperArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises UsageError instead of exiting with code 2."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        raise UsageError(f"{self.prog}: error: {message}")

def build_parser(profile_name: str) -> WrapperArgumentParser:
    """Build the command-line parser for a tool profile."""
    parser = WrapperArgumentParser(
        description=DESC,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--input", help="Input BAM File")
    parser.add_argument(
        "--sort_order",
        default="coordinate",
        help="Sort Order (coordinate, queryname; default: coordinate)",
    )
    parser.add_argument(
        "--output",
        help="Output Directory" if profile_name == "singularity" else "Output BAM File",
    )
    parser.add_argument(
        "--exec_method",
        default="auto",
        help=f"Execution method ({profile_name}, auto; default: auto)",
    )
    parser.add_argument(
        "--exec_init",
        default="",
        help="Execution initialization command(s)",
    )
    return parser

def parse_arguments(
    parser: argparse.ArgumentParser,
    argv: Sequence[str] | None = None,
) -> argparse.Namespace:
    """
    Parse command-line arguments, rejecting anything unrecognized.
    Args:
        parser (argparse.ArgumentParser): Parser from build_parser
        argv (Sequence[str] | None): Arguments (default: sys.argv[1:])
    Returns:
        argparse.Namespace: Parsed arguments
    """
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        parser.print_usage(sys.stderr)
        raise UsageError(
            f"Invalid option: {' '.join(unknown)}",
            exit_code=UNKNOWN_OPTION_EXIT_CODE,
        )
    return args

def apply_env_overrides(
    values: Mapping[str, str | None],
    environ: Mapping[str, str],
) -> dict[str, str | None]:
    """
    Replace option values with non-empty lowercase environment variables.
    Args:
        values (Mapping[str, str | None]): Values from the command line
        environ (Mapping[str, str]): Environment variables
    Returns:
        dict[str, str | None]: Values with overrides applied
    """
    merged = dict(values)
    for name in OPTION_NAMES:
        if environ.get(name):
            logger.info(f"Using environment override for {name}")
            merged[name] = environ[name]
    return merged

def build_config(
    values: Mapping[str, str | None],
    profile: ToolProfile,
) -> InvocationConfig:
    """
    Validate option values and freeze them into an InvocationConfig.
    Args:
        values (Mapping[str, str | None]): Option values after overrides
        profile (ToolProfile): Active tool profile
    Returns:
        InvocationConfig: Validated configuration
    """
    if not values.get("input"):
        msg = "Input BAM File required"
        logger.error(msg)
        raise ValidationError(msg)
    if not values.get("output"):
        msg = "Output Directory required" if profile.writes_directory else "Output BAM File required"
        logger.error(msg)
        raise ValidationError(msg)
    sort_order = values.get("sort_order") or "coordinate"
    if sort_order not in SORT_ORDERS:
        msg = f"Invalid sort order: {sort_order}"
        logger.error(msg)
        raise ValidationError(msg)
    exec_method = values.get("exec_method") or "auto"
    validate_exec_method(exec_method, profile)
    return InvocationConfig(
        input=values["input"],
        sort_order=sort_order,
        output=values["output"],
        exec_method=exec_method,
        exec_init=values.get("exec_init") or "",
    )

def log_config(config: InvocationConfig) -> None:
    logger.info(f"Input: {config.input}")
    logger.info(f"Sort_order: {config.sort_order}")
    logger.info(f"Output: {config.output}")
    logger.info(f"Execution Method: {config.exec_method}")
    logger.info(f"Execution Initialization: {config.exec_init}")

##############
# MAIN LOGIC #
##############

def run_bam_sort(
    profile_name: str,
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    """
    Run one sort from argument parsing to container exit.
    Args:
        profile_name (str): Tool profile to run with
        argv (Sequence[str] | None): Command-line arguments
        environ (Mapping[str, str] | None): Environment (default: os.environ)
    Returns:
        int: Exit code (0); failures raise BamSortError
    """
    if environ is None:
        environ = os.environ
    parser = build_parser(profile_name)
    args = parse_arguments(parser, argv)
    script_dir = get_script_dir(environ)
    try:
        profile = load_tool_profile(profile_name, script_dir / PROFILE_DIRNAME)
    except (OSError, ValueError) as e:
        msg = f"Unable to load tool profile {profile_name}: {e}"
        logger.error(msg)
        raise ValidationError(msg) from e
    try:
        config = build_config(apply_env_overrides(vars(args), environ), profile)
    except ValidationError:
        parser.print_usage(sys.stderr)
        raise
    log_config(config)

    # S3 downloads land here and are removed when the run ends
    with tempfile.TemporaryDirectory(prefix="bam-sort-") as staging_dir:
        staged = stage_input(config.input, staging_dir=Path(staging_dir))
        paths = resolve_paths(staged.path, config.output, profile)

        logger.info(f"CMD={config.exec_init}")
        init_env = run_shell_command(config.exec_init, env=environ)

        try:
            backend = detect_exec_method(
                config.exec_method, profile, search_path=init_env.get("PATH")
            )
        except ValidationError:
            parser.print_usage(sys.stderr)
            raise
        plan = build_execution_plan(profile, backend, paths, config.sort_order)
        run_plan(plan, env=init_env)
    return 0

def main(
    profile_name: str = DEFAULT_PROFILE,
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Entry point; always logs the exit code before exiting."""
    exit_code = 1
    try:
        exit_code = run_bam_sort(profile_name, argv, environ)
    except SystemExit as e:
        # argparse --help
        exit_code = e.code if isinstance(e.code, int) else 0 if e.code is None else 1
    except UsageError as e:
        logger.error(str(e))
        exit_code = e.exit_code
    except BamSortError as e:
        exit_code = e.exit_code
    finally:
        logger.info(f"Exit code: {exit_code}")
    sys.exit(exit_code)

def docker_main() -> None:
    """Entry point for the Docker tool profile."""
    main("docker")

if __name__ == "__main__":
    main()
