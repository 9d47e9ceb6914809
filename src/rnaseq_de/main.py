from pathlib import Path
from typing import List, Optional

import typer

from .config import settings
from .models.de_result import DEConfig
from .services.io import setup_logger, write_de_results

app = typer.Typer(
    help="Negative-binomial GLM likelihood-ratio tests for RNA-seq count tables"
)


@app.command()
def info() -> None:
    """Show basic environment info."""
    typer.echo(f"Environment: {settings.environment}")
    typer.echo(f"Workers: {settings.n_jobs}")
    typer.echo(f"Dispersion trend: {settings.fit_type}")


@app.command()
def run(
    counts: Path = typer.Argument(..., help="Gene x sample count table"),
    samples: Path = typer.Argument(..., help="Sample sheet"),
    output_dir: Path = typer.Argument(..., help="Output directory"),
    factor: str = typer.Option(..., help="Grouping factor column"),
    level: List[str] = typer.Option(..., help="Factor level, reference first"),
    covariate: Optional[List[str]] = typer.Option(None, help="Covariate column"),
    annotation: Optional[Path] = typer.Option(None, help="gene_id/symbol table"),
    sample_col: str = typer.Option("sample_id", help="Sample id column"),
    contrast: Optional[List[str]] = typer.Option(
        None, help="Numerator and denominator level of the fold change"
    ),
    prefix: str = typer.Option("lrt", help="Output file prefix"),
    n_jobs: Optional[int] = typer.Option(None, help="Parallel workers"),
) -> None:
    """Run the likelihood-ratio test of covariates + factor vs covariates."""
    setup_logger(settings.log_file)
    config = DEConfig.from_settings(n_jobs=n_jobs)
    paths = write_de_results(
        output_dir=output_dir,
        count_file=counts,
        sample_file=samples,
        factor=factor,
        levels=level,
        covariates=covariate or (),
        annotation_file=annotation,
        sample_col=sample_col,
        contrast=contrast or None,
        prefix=prefix,
        config=config,
    )
    for name, path in paths.items():
        typer.echo(f"{name}: {path}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
