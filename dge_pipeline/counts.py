"""
Count matrix and sample metadata loading.

This module reads a gene-by-sample count table and a sample sheet of
categorical covariates, validates them, and aligns the two so that the
metadata rows follow the count matrix columns.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .errors import MalformedInputError
from .utils import validate_file_exists, is_gzipped, infer_separator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class CountMatrix:
    """Non-negative integer read counts, genes as rows and samples as columns."""

    genes: tuple
    samples: tuple
    counts: np.ndarray

    def __post_init__(self):
        counts = np.asarray(self.counts)
        if counts.ndim != 2 or counts.shape != (len(self.genes), len(self.samples)):
            raise MalformedInputError(
                f"Count matrix shape {counts.shape} does not match "
                f"{len(self.genes)} genes x {len(self.samples)} samples"
            )
        if counts.size and counts.min() < 0:
            raise MalformedInputError("Negative counts are not allowed")
        counts = counts.astype(np.int64, copy=True)
        counts.setflags(write=False)
        object.__setattr__(self, 'genes', tuple(str(g) for g in self.genes))
        object.__setattr__(self, 'samples', tuple(str(s) for s in self.samples))
        object.__setattr__(self, 'counts', counts)

    @property
    def n_genes(self) -> int:
        return len(self.genes)

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    @property
    def library_sizes(self) -> np.ndarray:
        """Column sums of the count matrix."""
        return self.counts.sum(axis=0).astype(np.float64)

    def subset_genes(self, keep: Union[np.ndarray, Sequence[bool]]) -> 'CountMatrix':
        """Return a new matrix with only the genes selected by a boolean mask."""
        keep = np.asarray(keep, dtype=bool)
        genes = tuple(g for g, k in zip(self.genes, keep) if k)
        return CountMatrix(genes=genes, samples=self.samples, counts=self.counts[keep, :])

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(self.counts, index=list(self.genes), columns=list(self.samples))
        df.index.name = 'gene_id'
        return df

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> 'CountMatrix':
        """Build a CountMatrix from a numeric DataFrame indexed by gene id."""
        values = df.apply(pd.to_numeric, errors='coerce')
        bad_rows = values.isna().any(axis=1)
        if bad_rows.any():
            raise MalformedInputError(
                "Missing or non-numeric counts for genes",
                values.index[bad_rows].astype(str).tolist(),
            )
        negative = (values < 0).any(axis=1)
        if negative.any():
            raise MalformedInputError(
                "Negative counts for genes", values.index[negative].astype(str).tolist()
            )
        duplicated = df.index[df.index.duplicated()].astype(str).unique().tolist()
        if duplicated:
            raise MalformedInputError("Duplicate gene identifiers", duplicated)
        duplicated = df.columns[df.columns.duplicated()].astype(str).unique().tolist()
        if duplicated:
            raise MalformedInputError("Duplicate sample identifiers", duplicated)

        counts = np.rint(values.to_numpy(dtype=np.float64)).astype(np.int64)
        return cls(genes=tuple(df.index), samples=tuple(df.columns), counts=counts)


@dataclass(frozen=True, eq=False)
class SampleMetadata:
    """Categorical covariates, one row per sample, indexed by sample id."""

    table: pd.DataFrame

    def __post_init__(self):
        table = self.table.copy()
        table.index = table.index.astype(str)
        duplicated = table.index[table.index.duplicated()].unique().tolist()
        if duplicated:
            raise MalformedInputError("Duplicate sample identifiers in metadata", duplicated)
        object.__setattr__(self, 'table', table.astype(str))

    @property
    def samples(self) -> List[str]:
        return self.table.index.tolist()

    @property
    def covariates(self) -> List[str]:
        return self.table.columns.tolist()

    def column(self, name: str) -> pd.Series:
        if name not in self.table.columns:
            raise MalformedInputError(
                f"Covariate '{name}' not found in sample metadata; available",
                self.covariates,
            )
        return self.table[name]

    def reorder(self, samples: Sequence[str]) -> 'SampleMetadata':
        return SampleMetadata(self.table.loc[list(samples)])


def _read_table(path: Path, sep: Optional[str], **kwargs) -> pd.DataFrame:
    sep = sep or infer_separator(path)
    compression = 'gzip' if is_gzipped(path) else None
    try:
        return pd.read_csv(path, sep=sep, compression=compression, **kwargs)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise MalformedInputError(f"Could not parse {path}: {e}") from e


def load_sample_metadata(
    samples_path: Union[str, Path],
    sample_column: Optional[str] = None,
    sep: Optional[str] = None
) -> SampleMetadata:
    """
    Load the sample sheet.

    Args:
        samples_path: Path to a CSV/TSV sample sheet with a header row
        sample_column: Column holding sample identifiers (default: first column)
        sep: Column separator (default: inferred from the file extension)

    Returns:
        SampleMetadata indexed by sample identifier
    """
    path = validate_file_exists(samples_path)
    df = _read_table(path, sep, dtype=str, keep_default_na=False)

    if df.empty:
        raise MalformedInputError(f"Sample sheet {path} has no rows")

    sample_column = sample_column or df.columns[0]
    if sample_column not in df.columns:
        raise MalformedInputError(
            f"Sample column '{sample_column}' not found in {path}; available",
            df.columns.tolist(),
        )

    df[sample_column] = df[sample_column].str.strip()
    metadata = SampleMetadata(df.set_index(sample_column))
    logger.info(f"Loaded metadata for {len(metadata.samples)} samples "
                f"with covariates {metadata.covariates}")
    return metadata


def load_count_matrix(counts_path: Union[str, Path], sep: Optional[str] = None) -> CountMatrix:
    """
    Load a gene-by-sample count matrix.

    The first column holds gene identifiers and the header row holds sample
    identifiers. Non-integer values are rounded.

    Args:
        counts_path: Path to the (optionally gzip-compressed) count table
        sep: Column separator (default: inferred from the file extension)

    Returns:
        CountMatrix
    """
    path = validate_file_exists(counts_path)
    df = _read_table(path, sep, index_col=0)

    if df.shape[1] == 0:
        raise MalformedInputError(f"Count table {path} has no sample columns")

    df.index = df.index.astype(str)
    df.columns = [str(c).strip() for c in df.columns]
    matrix = CountMatrix.from_frame(df)
    logger.info(f"Loaded {matrix.n_genes} genes x {matrix.n_samples} samples from {path.name}")
    return matrix


def align_samples(counts: CountMatrix, metadata: SampleMetadata) -> SampleMetadata:
    """
    Check that both inputs describe the same samples.

    Args:
        counts: Count matrix
        metadata: Sample metadata

    Returns:
        Metadata reordered to match the count matrix columns

    Raises:
        MalformedInputError: If the sample identifiers differ
    """
    count_samples = set(counts.samples)
    meta_samples = set(metadata.samples)

    missing_meta = sorted(count_samples - meta_samples)
    missing_counts = sorted(meta_samples - count_samples)
    if missing_meta or missing_counts:
        offending = [f"{s} (no metadata)" for s in missing_meta]
        offending += [f"{s} (no counts)" for s in missing_counts]
        raise MalformedInputError("Sample identifiers differ between counts and metadata", offending)

    return metadata.reorder(counts.samples)
