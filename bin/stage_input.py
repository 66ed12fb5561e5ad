#!/usr/bin/env python3
"""
Stage the input BAM: wait for it to appear locally, downloading it first
when it is given as an S3 URI.
"""

###########
# IMPORTS #
###########

import logging
import time
from dataclasses import dataclass
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from container_exec import ValidationError

logger = logging.getLogger(__name__)

#############
# CONSTANTS #
#############

STAGING_ATTEMPTS = 10
STAGING_INTERVAL_SECONDS = 1

###############
# STAGED FILE #
###############

@dataclass(frozen=True)
class StagedInput:
    path: Path
    directory: Path
    base_name: str

    @classmethod
    def from_path(cls, path: Path) -> "StagedInput":
        full = path.expanduser().resolve()
        return cls(path=full, directory=full.parent, base_name=full.name)

##############
# S3 STAGING #
##############

def parse_s3_uri(s3_uri: str) -> tuple[str, str]:
    """
    Split an S3 URI into bucket and key.
    Args:
        s3_uri (str): URI of the form s3://bucket/key
    Returns:
        tuple[str, str]: (bucket, key)
    """
    path_without_scheme = s3_uri.removeprefix("s3://")
    parts = path_without_scheme.split("/", 1)
    if len(parts) < 2 or not parts[0] or not parts[1] or parts[1].endswith("/"):
        raise ValueError(f"Invalid S3 object URI: {s3_uri}")
    return parts[0], parts[1]

def download_s3_input(s3_uri: str, staging_dir: Path) -> Path:
    """
    Download an input object from S3 into a local staging directory.
    Args:
        s3_uri (str): S3 URI of the input BAM
        staging_dir (Path): Local directory to download into
    Returns:
        Path: Local path of the downloaded file
    """
    try:
        bucket, key = parse_s3_uri(s3_uri)
    except ValueError as e:
        logger.error(str(e))
        raise ValidationError(str(e)) from e
    local_path = staging_dir / Path(key).name
    logger.info(f"Downloading input from {s3_uri} to {local_path}")
    try:
        s3_client = boto3.client("s3")
        s3_client.download_file(bucket, key, str(local_path))
    except NoCredentialsError as e:
        msg = "AWS credentials not found"
        logger.error(msg)
        raise ValidationError(msg) from e
    except (BotoCoreError, ClientError) as e:
        msg = f"Failed to download input from S3: {e}"
        logger.error(msg)
        raise ValidationError(msg) from e
    return local_path

#################
# LOCAL STAGING #
#################

def wait_for_file(
    path: Path,
    attempts: int = STAGING_ATTEMPTS,
    interval: float = STAGING_INTERVAL_SECONDS,
) -> bool:
    """
    Poll for a file to exist, sleeping between checks.
    Args:
        path (Path): File to wait for
        attempts (int): Maximum number of waits
        interval (float): Seconds to sleep per wait
    Returns:
        bool: True if the file exists after polling
    """
    count = 0
    while not path.is_file():
        logger.info(f"{path} not staged, waiting...")
        time.sleep(interval)
        count += 1
        if count == attempts:
            break
    return path.is_file()

def stage_input(input_path: str, staging_dir: Path | None = None) -> StagedInput:
    """
    Make sure the input BAM is available locally and resolve its location.
    Args:
        input_path (str): Local path or S3 URI of the input BAM
        staging_dir (Path | None): Download directory for S3 inputs, owned
            and removed by the caller
    Returns:
        StagedInput: Absolute path, directory and base name of the input
    """
    if input_path.startswith("s3://"):
        if staging_dir is None:
            msg = f"No staging directory given for S3 input: {input_path}"
            logger.error(msg)
            raise ValidationError(msg)
        local_path = download_s3_input(input_path, staging_dir)
    else:
        local_path = Path(input_path)
    if not wait_for_file(local_path):
        msg = f"Input BAM File not found: {input_path}"
        logger.error(msg)
        raise ValidationError(msg)
    staged = StagedInput.from_path(local_path)
    logger.info(f"Staged input: {staged.path}")
    return staged
