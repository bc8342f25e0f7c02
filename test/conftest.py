"""
Shared fixtures for the DGE Pipeline test suite.
"""

import sys
from pathlib import Path

import pytest

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from dge_pipeline.counts import CountMatrix, SampleMetadata
from generate_test_data import CountDataGenerator, write_count_data


@pytest.fixture
def two_group_data():
    """2 vs 2 samples, 100 genes, 5 up and 5 down 8-fold in condition B."""
    generator = CountDataGenerator(n_genes=100, dispersion=0.01, seed=7)
    counts, samplesheet, changed = generator.two_group_counts(n_per_group=2)
    return counts, samplesheet, changed


@pytest.fixture
def two_group_inputs(two_group_data):
    counts, samplesheet, changed = two_group_data
    matrix = CountMatrix.from_frame(counts)
    metadata = SampleMetadata(samplesheet.set_index('sample_id'))
    return matrix, metadata, changed


@pytest.fixture
def two_group_files(tmp_path, two_group_data):
    counts, samplesheet, changed = two_group_data
    counts_file, samplesheet_file = write_count_data(tmp_path / "data", counts, samplesheet)
    return counts_file, samplesheet_file, changed


@pytest.fixture
def two_factor_metadata():
    generator = CountDataGenerator(seed=3)
    samplesheet = generator.two_factor_samplesheet()
    return SampleMetadata(samplesheet.set_index('sample_id'))
