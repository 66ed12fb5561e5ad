#!/usr/bin/env python3
"""
Read and validate tool profiles: YAML descriptions of how one variant of the
BAM sort wrapper runs (container runtime, image, command template and output
convention).
"""

###########
# IMPORTS #
###########

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

#############
# CONSTANTS #
#############

PROFILE_DIRNAME = "profiles"
SUPPORTED_BACKENDS = ("singularity", "docker")
OUTPUT_MODES = ("directory", "file")
REQUIRED_FIELDS = ["name", "backend", "image", "output_mode", "command"]

# Placeholders a command template may reference
TEMPLATE_FIELDS = {
    "input",
    "input_dir",
    "input_base",
    "output",
    "output_dir",
    "output_base",
    "log_dir",
    "tmp_dir",
}

#################
# PROFILE TYPES #
#################

@dataclass(frozen=True)
class ToolProfile:
    """One variant of the wrapper."""

    name: str
    backend: str
    image: str
    output_mode: str
    command: tuple[str, ...]
    create_tmp_dir: bool = False

    @property
    def exec_methods(self) -> tuple[str, str]:
        """Execution methods accepted on the command line for this profile."""
        return (self.backend, "auto")

    @property
    def writes_directory(self) -> bool:
        return self.output_mode == "directory"

######################
# PROFILE VALIDATION #
######################

def template_fields(token: str) -> set[str]:
    """
    List the placeholder names used by a command template token.
    Args:
        token (str): Template token, e.g. "^{tmp_dir}/{output_base}"
    Returns:
        set[str]: Placeholder names found in the token
    """
    return set(re.findall(r"\{(\w+)\}", token))

def validate_profile_spec(spec: dict[str, Any], source: str) -> None:
    """
    Check a parsed profile for required fields and consistent values.
    Args:
        spec (dict[str, Any]): Parsed YAML content
        source (str): Where the spec came from, for error messages
    """
    missing = [field for field in REQUIRED_FIELDS if field not in spec]
    if missing:
        msg = f"Tool profile {source} missing required fields: {', '.join(missing)}"
        logger.error(msg)
        raise ValueError(msg)
    if spec["backend"] not in SUPPORTED_BACKENDS:
        msg = f"Tool profile {source} has unsupported backend: {spec['backend']}"
        logger.error(msg)
        raise ValueError(msg)
    if spec["output_mode"] not in OUTPUT_MODES:
        msg = f"Tool profile {source} has unsupported output_mode: {spec['output_mode']}"
        logger.error(msg)
        raise ValueError(msg)
    command = spec["command"]
    if not isinstance(command, list) or not command:
        msg = f"Tool profile {source} command must be a non-empty list"
        logger.error(msg)
        raise ValueError(msg)
    for token in command:
        unknown = template_fields(str(token)) - TEMPLATE_FIELDS
        if unknown:
            msg = f"Tool profile {source} uses unknown placeholders: {', '.join(sorted(unknown))}"
            logger.error(msg)
            raise ValueError(msg)
        if "tmp_dir" in template_fields(str(token)) and not spec.get("create_tmp_dir", False):
            msg = f"Tool profile {source} references {{tmp_dir}} without create_tmp_dir"
            logger.error(msg)
            raise ValueError(msg)

###################
# PROFILE LOADING #
###################

def read_tool_profile(profile_file: Path) -> ToolProfile:
    """
    Read and validate a tool profile from a YAML file.
    Args:
        profile_file (Path): Path to the profile YAML file
    Returns:
        ToolProfile: Parsed profile
    """
    with open(profile_file) as f:
        spec = yaml.safe_load(f)
    if not isinstance(spec, dict):
        msg = f"Tool profile {profile_file} is not a mapping"
        logger.error(msg)
        raise ValueError(msg)
    validate_profile_spec(spec, str(profile_file))
    return ToolProfile(
        name=str(spec["name"]),
        backend=spec["backend"],
        image=str(spec["image"]),
        output_mode=spec["output_mode"],
        command=tuple(str(token) for token in spec["command"]),
        create_tmp_dir=bool(spec.get("create_tmp_dir", False)),
    )

def load_tool_profile(name: str, profile_dir: Path) -> ToolProfile:
    """
    Load a named profile from a profile directory.
    Args:
        name (str): Profile name (file stem)
        profile_dir (Path): Directory holding <name>.yaml files
    Returns:
        ToolProfile: Parsed profile
    """
    profile_file = profile_dir / f"{name}.yaml"
    if not profile_file.is_file():
        msg = f"Tool profile {name} not found in {profile_dir}"
        logger.error(msg)
        raise FileNotFoundError(msg)
    profile = read_tool_profile(profile_file)
    logger.info(f"Loaded tool profile {profile.name} from {profile_file}")
    return profile
