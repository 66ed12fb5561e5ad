#!/usr/bin/env python3
"""Unit tests for stage_input.py"""

from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from container_exec import ValidationError
from stage_input import (
    STAGING_ATTEMPTS,
    StagedInput,
    download_s3_input,
    parse_s3_uri,
    stage_input,
    wait_for_file,
)


class TestParseS3Uri:
    @pytest.mark.parametrize(
        "uri, expected",
        [
            ("s3://bucket/a.bam", ("bucket", "a.bam")),
            ("s3://bucket/path/to/a.bam", ("bucket", "path/to/a.bam")),
        ],
    )
    def test_valid(self, uri, expected):
        assert parse_s3_uri(uri) == expected

    @pytest.mark.parametrize("uri", ["s3://bucket", "s3://bucket/", "s3://bucket/dir/", "s3:///key"])
    def test_invalid(self, uri):
        with pytest.raises(ValueError, match="Invalid S3 object URI"):
            parse_s3_uri(uri)


class TestWaitForFile:
    @patch("stage_input.time.sleep")
    def test_existing_file_does_not_wait(self, mock_sleep, tmp_path):
        bam = tmp_path / "a.bam"
        bam.touch()
        assert wait_for_file(bam) is True
        mock_sleep.assert_not_called()

    @patch("stage_input.time.sleep")
    def test_missing_file_polls_ten_times(self, mock_sleep, tmp_path):
        assert wait_for_file(tmp_path / "missing.bam") is False
        assert mock_sleep.call_count == STAGING_ATTEMPTS == 10
        mock_sleep.assert_called_with(1)

    @patch("stage_input.time.sleep")
    def test_file_appears_while_waiting(self, mock_sleep, tmp_path):
        bam = tmp_path / "late.bam"

        def arrive(_interval):
            if mock_sleep.call_count == 3:
                bam.touch()

        mock_sleep.side_effect = arrive
        assert wait_for_file(bam) is True
        assert mock_sleep.call_count == 3

    @patch("stage_input.time.sleep")
    def test_directory_is_not_a_staged_file(self, mock_sleep, tmp_path):
        assert wait_for_file(tmp_path, attempts=2) is False
        assert mock_sleep.call_count == 2


class TestDownloadS3Input:
    @patch("stage_input.boto3")
    def test_downloads_to_staging_dir(self, mock_boto3, tmp_path):
        result = download_s3_input("s3://my-bucket/runs/a.bam", tmp_path)
        assert result == tmp_path / "a.bam"
        mock_boto3.client.assert_called_once_with("s3")
        mock_boto3.client.return_value.download_file.assert_called_once_with(
            "my-bucket", "runs/a.bam", str(tmp_path / "a.bam")
        )

    @patch("stage_input.boto3")
    def test_raises_on_client_error(self, mock_boto3, tmp_path):
        mock_boto3.client.return_value.download_file.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "GetObject"
        )
        with pytest.raises(ValidationError, match="Failed to download input from S3"):
            download_s3_input("s3://bucket/missing.bam", tmp_path)

    @patch("stage_input.boto3")
    def test_raises_on_missing_credentials(self, mock_boto3, tmp_path):
        mock_boto3.client.return_value.download_file.side_effect = NoCredentialsError()
        with pytest.raises(ValidationError, match="AWS credentials not found") as exc_info:
            download_s3_input("s3://bucket/a.bam", tmp_path)
        assert exc_info.value.exit_code == 1

    @patch("stage_input.boto3")
    def test_raises_on_connection_error(self, mock_boto3, tmp_path):
        mock_boto3.client.return_value.download_file.side_effect = EndpointConnectionError(
            endpoint_url="https://s3.amazonaws.com"
        )
        with pytest.raises(ValidationError, match="Failed to download input from S3"):
            download_s3_input("s3://bucket/a.bam", tmp_path)

    @patch("stage_input.boto3")
    def test_malformed_uri_is_a_validation_error(self, mock_boto3, tmp_path):
        with pytest.raises(ValidationError, match="Invalid S3 object URI: s3://bucket-only"):
            download_s3_input("s3://bucket-only", tmp_path)
        mock_boto3.client.assert_not_called()


class TestStageInput:
    def test_resolves_local_input(self, tmp_path, monkeypatch):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "a.bam").touch()
        monkeypatch.chdir(tmp_path)
        staged = stage_input("data/a.bam")
        assert staged == StagedInput(
            path=data_dir / "a.bam", directory=data_dir, base_name="a.bam"
        )
        assert staged.path.is_absolute()

    def test_resolves_symlinks(self, tmp_path):
        target = tmp_path / "real" / "a.bam"
        target.parent.mkdir()
        target.touch()
        link = tmp_path / "link.bam"
        link.symlink_to(target)
        staged = stage_input(str(link))
        assert staged.path == target.resolve()
        assert staged.directory == target.parent.resolve()

    @patch("stage_input.time.sleep")
    def test_missing_input_raises(self, mock_sleep, tmp_path):
        with pytest.raises(ValidationError, match="Input BAM File not found") as exc_info:
            stage_input(str(tmp_path / "missing.bam"))
        assert exc_info.value.exit_code == 1
        assert mock_sleep.call_count == 10

    @patch("stage_input.download_s3_input")
    def test_s3_input_is_downloaded(self, mock_download, tmp_path):
        local = tmp_path / "a.bam"
        local.touch()
        mock_download.return_value = local
        staged = stage_input("s3://bucket/a.bam", staging_dir=tmp_path)
        mock_download.assert_called_once_with("s3://bucket/a.bam", tmp_path)
        assert staged.path == local.resolve()

    @patch("stage_input.download_s3_input")
    def test_s3_input_without_staging_dir_raises(self, mock_download):
        with pytest.raises(ValidationError, match="No staging directory given"):
            stage_input("s3://bucket/a.bam")
        mock_download.assert_not_called()
