#!/usr/bin/env python3
"""
DGE Pipeline CLI

Command-line interface for differential gene expression analysis of RNA-seq
count matrices with voom, sample quality weights and empirical Bayes
moderated linear models.
"""

import typer
import sys
from pathlib import Path
from typing import Optional, List, Dict
import logging

from . import __version__
from .utils import console, setup_logging, validate_directory_exists, format_number
from .config import load_config
from .counts import load_count_matrix, load_sample_metadata, align_samples
from .design import build_design
from .filtering import filter_by_expression
from .normalize import normalize as normalize_counts
from .pipeline import run_differential_expression, write_results

app = typer.Typer(
    name="dge_pipeline",
    help="DGE Pipeline - Differential gene expression with voom and empirical Bayes",
    add_completion=False,
)

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"DGE Pipeline v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """DGE Pipeline CLI"""
    pass

def _parse_contrasts(contrasts: List[str]) -> Dict[str, str]:
    parsed = {}
    for item in contrasts:
        if '=' not in item:
            raise typer.BadParameter(f"Contrast must look like NAME=EXPRESSION, got '{item}'")
        name, expression = item.split('=', 1)
        parsed[name.strip()] = expression.strip()
    return parsed

@app.command("filter")
def filter_genes(
    counts: Path = typer.Argument(..., help="Count matrix (genes x samples)"),
    output: Path = typer.Option("filtered_counts.tsv", help="Output count matrix"),
    threshold: float = typer.Option(1.0, help="CPM threshold"),
    min_samples: Optional[int] = typer.Option(None, help="Samples that must pass (default: half)"),
):
    """Remove genes with low counts per million."""
    console.print("[bold blue]Filtering lowly expressed genes[/bold blue]")

    try:
        matrix = load_count_matrix(counts)
        filtered = filter_by_expression(matrix, threshold=threshold, min_samples=min_samples)
        filtered.to_frame().to_csv(output, sep='\t')
        console.print(f"[bold green]Kept {filtered.n_genes} of {matrix.n_genes} genes[/bold green]")
        console.print(f"Filtered counts saved to: {output}")

    except Exception as e:
        console.print(f"[bold red]Error filtering counts: {e}[/bold red]")
        sys.exit(1)

@app.command()
def normalize(
    counts: Path = typer.Argument(..., help="Count matrix (genes x samples)"),
    output: Path = typer.Option("norm_factors.tsv", help="Output table of normalization factors"),
    method: str = typer.Option("TMM", help="TMM, upperquartile or none"),
    threshold: Optional[float] = typer.Option(None, help="Filter genes at this CPM first"),
):
    """Compute library size normalization factors."""
    console.print(f"[bold blue]Computing {method} normalization factors[/bold blue]")

    try:
        matrix = load_count_matrix(counts)
        if threshold is not None:
            matrix = filter_by_expression(matrix, threshold=threshold)
        normalized = normalize_counts(matrix, method=method)

        table = normalized.counts.to_frame().sum(axis=0).rename('lib_size').to_frame()
        table['norm_factor'] = normalized.norm_factors
        table['effective_lib_size'] = normalized.effective_library_sizes
        table.to_csv(output, sep='\t', index_label='sample')

        for sample, lib, factor in zip(normalized.samples, normalized.library_sizes,
                                       normalized.norm_factors):
            console.print(f"  {sample}: {format_number(lib)} reads, factor {factor:.4f}")
        console.print("[bold green]Normalization completed![/bold green]")
        console.print(f"Factors saved to: {output}")

    except Exception as e:
        console.print(f"[bold red]Error in normalization: {e}[/bold red]")
        sys.exit(1)

@app.command()
def design(
    samplesheet: Path = typer.Argument(..., help="Sample metadata file"),
    formula: str = typer.Option(..., help="Model formula, e.g. '~ population + temp'"),
    output: Optional[Path] = typer.Option(None, help="Write the design matrix to this file"),
    sample_column: Optional[str] = typer.Option(None, help="Sample id column (default: first)"),
):
    """Build and check the design matrix for a model formula."""
    console.print(f"[bold blue]Building design for {formula}[/bold blue]")

    try:
        metadata = load_sample_metadata(samplesheet, sample_column=sample_column)
        matrix = build_design(metadata, formula)
        frame = matrix.to_frame()
        console.print(frame.to_string())
        console.print(f"[bold green]Design has full rank ({matrix.rank})[/bold green]")

        if output:
            frame.to_csv(output, sep='\t', index_label='sample')
            console.print(f"Design matrix saved to: {output}")

    except Exception as e:
        console.print(f"[bold red]Error building design: {e}[/bold red]")
        sys.exit(1)

@app.command()
def run(
    counts: Path = typer.Argument(..., help="Count matrix (genes x samples)"),
    samplesheet: Path = typer.Argument(..., help="Sample metadata file"),
    formula: str = typer.Option(..., help="Model formula, e.g. '~ population + temp'"),
    output_dir: Path = typer.Option("./dge_results", help="Output directory"),
    config: Optional[Path] = typer.Option(None, help="YAML file with analysis settings"),
    coef: Optional[List[str]] = typer.Option(None, help="Coefficients to report (default: all but intercept)"),
    contrast: Optional[List[str]] = typer.Option(None, help="Contrast as NAME=EXPRESSION, e.g. HvL=tempHigh-tempLow"),
    sample_column: Optional[str] = typer.Option(None, help="Sample id column (default: first)"),
    robust: Optional[bool] = typer.Option(None, "--robust/--no-robust", help="Robust empirical Bayes"),
    trend: Optional[bool] = typer.Option(None, "--trend/--no-trend", help="Intensity-trended prior variance"),
    quality_weights: Optional[bool] = typer.Option(
        None, "--quality-weights/--no-quality-weights", help="Estimate sample quality weights"
    ),
    p_value: Optional[float] = typer.Option(None, help="Adjusted p-value cutoff"),
    lfc: Optional[float] = typer.Option(None, help="Minimum absolute log2 fold change"),
    sort_by: Optional[str] = typer.Option(None, help="p, logFC or none"),
    significant_only: Optional[bool] = typer.Option(
        None, "--significant-only/--all-genes", help="Only write genes passing the cutoffs"
    ),
):
    """Run the full differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        settings = load_config(config).update(
            robust=robust,
            trend=trend,
            quality_weights=quality_weights,
            p_value=p_value,
            lfc=lfc,
            sort_by=sort_by,
            significant_only=significant_only,
        )
        result = run_differential_expression(
            counts_path=counts,
            samples_path=samplesheet,
            formula=formula,
            config=settings,
            contrasts=_parse_contrasts(contrast) if contrast else None,
            sample_column=sample_column,
        )
        outputs = write_results(result, output_dir, coefs=coef)

        decisions = result.decisions()
        for name in decisions.columns:
            up = int((decisions[name] == 1).sum())
            down = int((decisions[name] == -1).sum())
            console.print(f"  {name}: {up} up, {down} down")
        console.print("[bold green]Differential expression analysis completed![/bold green]")
        console.print(f"Results saved to: {output_dir} ({len(outputs)} files)")

    except Exception as e:
        console.print(f"[bold red]Error in differential expression: {e}[/bold red]")
        sys.exit(1)

@app.command()
def validate_samplesheet(
    samplesheet: Path = typer.Argument(..., help="Samplesheet file to validate"),
    counts: Optional[Path] = typer.Option(None, help="Count matrix whose samples must match"),
    sample_column: Optional[str] = typer.Option(None, help="Sample id column (default: first)"),
    output_file: Optional[Path] = typer.Option(None, help="Output validated samplesheet"),
):
    """Validate and optionally reformat samplesheet."""
    console.print("[bold blue]Validating samplesheet[/bold blue]")

    try:
        metadata = load_sample_metadata(samplesheet, sample_column=sample_column)
        if counts:
            metadata = align_samples(load_count_matrix(counts), metadata)
        console.print(f"[bold green]Samplesheet is valid![/bold green]")
        console.print(f"Found {len(metadata.samples)} valid samples")
        for covariate in metadata.covariates:
            levels = sorted(metadata.column(covariate).unique())
            console.print(f"  {covariate}: {', '.join(levels)}")

        if output_file:
            validate_directory_exists(Path(output_file).parent, create=True)
            metadata.table.to_csv(output_file, sep='\t', index_label='sample')
            console.print(f"Validated samplesheet saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Samplesheet validation failed: {e}[/bold red]")
        sys.exit(1)

if __name__ == "__main__":
    app()
