"""
Command-line interface for the airway differential expression pipeline.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from airwayseq.config.settings import Settings
from airwayseq.core import AirwaySeqError
from airwayseq.utils.logger import setup_logging
from airwayseq.version import __version__

console = Console()

app = typer.Typer(
    name="airwayseq",
    help="DESeq2 differential expression analysis of the airway dexamethasone experiment",
    add_completion=True,
    rich_markup_mode="rich",
)


def _significance_table(result, alpha: float) -> Table:
    table = Table(
        title=f"Genes by adjusted p-value (alpha = {alpha})",
        box=box.ROUNDED,
        header_style="bold cyan",
    )
    table.add_column("Result table", style="cyan", no_wrap=True)
    table.add_column("Significant", justify="right", style="green")
    table.add_column("Not significant", justify="right")
    table.add_column("Untestable (padj NA)", justify="right", style="yellow")
    table.add_column("Up", justify="right", style="red")
    table.add_column("Down", justify="right", style="blue")

    for label, counts in result.significance.items():
        summary = result.summaries[label]
        table.add_row(
            label,
            str(counts["significant"]),
            str(counts["not_significant"]),
            str(counts["untestable"]),
            str(summary["up"]),
            str(summary["down"]),
        )
    return table


@app.command()
def run(
    counts: Optional[Path] = typer.Option(
        None, "--counts", help="Count matrix file (genes x samples, CSV/TSV)"
    ),
    metadata: Optional[Path] = typer.Option(
        None, "--metadata", help="Sample metadata file (samples x attributes, CSV/TSV)"
    ),
    h5ad: Optional[Path] = typer.Option(
        None, "--h5ad", help="AnnData file with counts (obs = samples, var = genes)"
    ),
    simulate: bool = typer.Option(
        False, "--simulate", help="Use simulated counts on the airway design"
    ),
    seed: int = typer.Option(0, "--seed", help="Random seed for --simulate"),
    n_genes: int = typer.Option(2000, "--n-genes", help="Number of genes for --simulate"),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Directory for tables and figures"
    ),
    alpha: Optional[float] = typer.Option(
        None, "--alpha", help="Adjusted p-value cutoff"
    ),
    lfc_threshold: Optional[float] = typer.Option(
        None, "--lfc-threshold", help="log2 fold change threshold of the thresholded test"
    ),
    no_annotate: bool = typer.Option(
        False, "--no-annotate", help="Skip the gene symbol lookup"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the full pipeline and export results."""
    from airwayseq.services.orchestration.pipeline import AirwayPipeline

    settings = Settings()
    setup_logging(logging.DEBUG if verbose else settings.LOG_LEVEL)

    if alpha is not None:
        settings.ALPHA = alpha
    if lfc_threshold is not None:
        settings.LFC_THRESHOLD = lfc_threshold
    if output_dir is not None:
        settings.OUTPUT_DIR = output_dir

    is_valid, error_msg = settings.validate_configuration()
    if not is_valid:
        console.print(f"[red]Invalid configuration:[/red] {error_msg}")
        raise typer.Exit(1)

    pipeline = AirwayPipeline(settings=settings, annotate=not no_annotate)
    try:
        dataset, _, load_step = pipeline.load(
            counts_path=counts,
            metadata_path=metadata,
            h5ad_path=h5ad,
            simulate_seed=seed if simulate else None,
            simulate_genes=n_genes,
        )
        result = pipeline.run(dataset, load_step=load_step)
        written = pipeline.export(result, settings.OUTPUT_DIR)
    except (AirwaySeqError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    filter_stats = result.stats["filter"]
    console.print(
        Panel.fit(
            f"Genes: {filter_stats['n_genes_before']} -> {filter_stats['n_genes_after']} "
            f"after low-count filter\nSamples: {result.dataset.n_samples}",
            title="airwayseq",
            border_style="cyan",
        )
    )
    console.print(_significance_table(result, settings.ALPHA))
    console.print(
        f"Wrote {len(written['tables'])} tables and {len(written['figures'])} figure "
        f"files to [bold]{settings.OUTPUT_DIR}[/bold]"
    )


@app.command()
def config():
    """Show the effective configuration."""
    settings = Settings()

    table = Table(box=box.SIMPLE, show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    for name, value in sorted(settings.get_all_settings().items()):
        if name == "config_error":
            continue
        table.add_row(name, str(value))
    console.print(table)

    if settings.config_error:
        console.print(f"[red]Invalid configuration:[/red] {settings.config_error}")
        raise typer.Exit(1)
    console.print("[green]Configuration is valid[/green]")


@app.command()
def version():
    """Show the airwayseq version."""
    console.print(f"airwayseq {__version__}")


if __name__ == "__main__":
    app()
