"""Shared pytest fixtures for the BAM sort wrapper tests."""

from pathlib import Path

import pytest

from tool_profiles import ToolProfile

PROFILE_DIR = Path(__file__).parent / "profiles"


@pytest.fixture
def profile_dir():
    """Directory holding the built-in tool profiles."""
    return PROFILE_DIR


@pytest.fixture
def singularity_profile():
    """Directory-output profile matching profiles/singularity.yaml."""
    return ToolProfile(
        name="singularity",
        backend="singularity",
        image="docker://quay.io/biocontainers/samtools:1.10--h9402c20_1",
        output_mode="directory",
        command=("samtools", "sort", "^{input}"),
    )


@pytest.fixture
def docker_profile():
    """File-output profile matching profiles/docker.yaml."""
    return ToolProfile(
        name="docker",
        backend="docker",
        image="quay.io/biocontainers/samtools:1.10--h9402c20_1",
        output_mode="file",
        command=("samtools", "sort", "-T", "^{tmp_dir}/{output_base}", "^{input}"),
        create_tmp_dir=True,
    )


@pytest.fixture
def bam_factory(tmp_path):
    """Factory fixture that writes small BAM files with pysam.

    Example:
        def test_something(bam_factory):
            bam = bam_factory("in.bam", [("r1", 0, 100), ("r2", 1, 5)], sort_order="coordinate")
    """
    import pysam

    def _make(filename, reads, sort_order=None):
        """Write reads given as (name, reference_id, start); reference_id -1 is unmapped."""
        hd = {"VN": "1.6"}
        if sort_order is not None:
            hd["SO"] = sort_order
        header = {
            "HD": hd,
            "SQ": [{"SN": "chr1", "LN": 10000}, {"SN": "chr2", "LN": 10000}],
        }
        path = tmp_path / filename
        with pysam.AlignmentFile(str(path), "wb", header=header) as out:
            for name, reference_id, start in reads:
                read = pysam.AlignedSegment(out.header)
                read.query_name = name
                read.query_sequence = "ACGTACGTAC"
                read.query_qualities = pysam.qualitystring_to_array("IIIIIIIIII")
                if reference_id < 0:
                    read.flag = 4
                    read.reference_id = -1
                    read.reference_start = -1
                else:
                    read.flag = 0
                    read.reference_id = reference_id
                    read.reference_start = start
                    read.mapping_quality = 60
                    read.cigarstring = "10M"
                out.write(read)
        return path

    return _make
