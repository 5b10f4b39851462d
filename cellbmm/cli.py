import os
import sys

import click
import pandas as pd
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from . import __version__
from .config import load_params_yaml, set_param
from .errors import CellBmmError
from .pipeline import run_pipeline


console = Console()


def _show_table(df: pd.DataFrame, title: str) -> None:
    table = Table(title=title, show_lines=False)
    for col in df.columns:
        table.add_column(str(col))
    for _, row in df.iterrows():
        table.add_row(*[str(row[c]) for c in df.columns])
    console.print(table)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="cellbmm", message="%(prog)s %(version)s")
@click.option("--spatial", required=True, type=click.Path(exists=True, dir_okay=False), help="Molecule table CSV (x, y, gene[, confidence]).")
@click.option("--centers", type=click.Path(exists=True, dir_okay=False), help="Optional prior cell centers CSV (x, y).")
@click.option("--out-dir", required=True, type=click.Path(file_okay=False), help="Output directory.")
@click.option("--config", type=click.Path(exists=True, dir_okay=False), help="YAML config overriding config/params.yaml.")
@click.option("--n-frames", type=click.IntRange(min=1), help="Number of spatial frames.")
@click.option("--n-cells-init", type=click.IntRange(min=1), help="Number of initial cells when no centers are given.")
@click.option("--scale", type=click.FloatRange(min=0, min_open=True), help="Expected cell radius; estimated from data if omitted.")
@click.option("--seed", type=int, help="Random seed.")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False), default="INFO", show_default=True)
@click.option("--no-h5ad", is_flag=True, help="Do not write cells.h5ad.")
@click.option("--no-show-sample", is_flag=True, help="Do not show sample rows of the inputs.")
@click.option("--internal-progress/--no-internal-progress", default=False, show_default=True,
              help="Show progress bars of the pipeline steps on a terminal.")
def main(spatial, centers, out_dir, config, n_frames, n_cells_init, scale, seed, log_level, no_h5ad, no_show_sample,
         internal_progress):
    """CellBMM CLI: build the initial cell mixture and write it out."""
    os.makedirs(out_dir, exist_ok=True)

    try:
        cfg = load_params_yaml(config)
    except (OSError, CellBmmError) as e:
        console.print(f"[red]Error: {e}")
        sys.exit(1)

    # CLI values take precedence over the YAML config
    for key, value in (("frames.n_frames", n_frames), ("init.n_cells_init", n_cells_init),
                       ("init.scale", scale), ("seed", seed)):
        if value is not None:
            set_param(cfg, key, value)
    if no_h5ad:
        set_param(cfg, "io.write_h5ad", False)
    cfg["log_level"] = log_level.upper()

    if not no_show_sample:
        _show_table(pd.read_csv(spatial, nrows=5), "Molecules sample (top 5)")
        if centers:
            _show_table(pd.read_csv(centers, nrows=5), "Prior centers sample (top 5)")

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Starting pipeline", total=None)

        def _cb(desc: str):
            progress.update(t, description=desc)

        try:
            outputs = run_pipeline(
                spatial_path=spatial,
                out_dir=out_dir,
                centers_path=centers,
                cfg=cfg,
                show_internal_progress=internal_progress,
                progress_callback=_cb,
            )
            progress.update(t, description="Finished")
        except (CellBmmError, ValueError, OSError) as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {e}")
            sys.exit(1)

    console.print("[green]Done.")
    for name, path in outputs.items():
        if path:
            console.print(f"- {name}: {path}")


if __name__ == "__main__":
    main()
