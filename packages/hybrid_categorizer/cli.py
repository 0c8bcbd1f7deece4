# ruff: noqa: I001
"""CLI for the ``hybrid_categorizer`` package.

This module exposes callable command handlers (``cmd_batch_run``,
``cmd_evaluate``, ...) and a Typer-based console interface. Environment
variables (``DATABASE_URL``, ``OPENAI_API_KEY``, ``CATEGORIZER_*``) are loaded
from a local ``.env`` using ``python-dotenv`` in the root callback. Business
logic lives in ``hybrid_categorizer.api`` and related modules.

Handlers print results to stdout, print ``Error: ...`` to stderr on failure
and return a process exit code.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging
from .taxonomy import DEFAULT_SEED_PATH


# ---- Command handlers ------------------------------------------------------------


def cmd_batch_run(
    *,
    org_id: str | None = None,
    max_batches: int | None = None,
    database_url: str | None = None,
) -> int:
    """Run the batch orchestrator once and print the report as JSON."""

    from .api import batch_run

    if not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1

    report = batch_run(org_id=org_id, max_batches=max_batches, database_url=database_url)
    print(json.dumps(report.to_dict(), indent=2))
    if report.error:
        print(f"Error: batch run failed: {report.error}", file=sys.stderr)
        return 1
    return 0


def cmd_evaluate(
    dataset_path: Path,
    *,
    mode: str = "pass1",
    batch_size: int = 10,
    concurrency: int = 1,
    hybrid_threshold: float = 0.95,
    industry: str | None = None,
    csv_out: Path | None = None,
) -> int:
    """Evaluate the engine over a JSON dataset and print the report as JSON."""

    from .api import evaluation_run
    from .errors import ValidationError
    from .evaluation import load_dataset_file, parse_options
    from .metrics import metrics_to_csv

    try:
        options = parse_options(
            {
                "mode": mode,
                "batch_size": batch_size,
                "concurrency": concurrency,
                "hybrid_threshold": hybrid_threshold,
                "industry": industry,
            }
        )
        dataset = load_dataset_file(dataset_path)
    except FileNotFoundError:
        print(f"Error: dataset not found: {dataset_path}", file=sys.stderr)
        return 1
    except ValidationError as e:
        details = "; ".join(e.problems)
        print(f"Error: {e}{': ' + details if details else ''}", file=sys.stderr)
        return 1

    if options.mode != "pass1" and not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set in the environment.", file=sys.stderr)
        return 1

    try:
        report = evaluation_run(dataset, options)
    except Exception as e:  # noqa: BLE001
        print(f"Error: evaluation failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps(report.to_dict(), indent=2))
    if csv_out is not None:
        try:
            csv_out.write_text(metrics_to_csv(report.metrics), encoding="utf-8")
        except OSError as e:
            print(f"Error: could not write {csv_out}: {e}", file=sys.stderr)
            return 1
    return 1 if report.status == "failed" else 0


def cmd_seed_taxonomy(*, database_url: str | None = None, file: Path = DEFAULT_SEED_PATH) -> int:
    from .seed_taxonomy import reseed_taxonomy

    try:
        count = reseed_taxonomy(database_url=database_url, file=file)
    except Exception as e:  # noqa: BLE001
        print(f"Error: seeding taxonomy failed: {e}", file=sys.stderr)
        return 1
    print(f"Seeded {count} categories from {file}")
    return 0


def cmd_taxonomy(*, industry: str | None = None) -> int:
    """Print ``slug<TAB>name<TAB>parent`` for each leaf category in ``industry``."""

    from .config import load_config
    from .taxonomy import default_registry

    registry = default_registry()
    try:
        vertical = (industry or load_config().model.industry).strip().lower()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for category in registry.list_by_industry(vertical, tier=2):
        parent = registry.parent_of(category)
        print(f"{category.slug}\t{category.name}\t{parent.slug if parent else ''}")
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Hybrid transaction categorization: rules first, OpenAI (Responses API) "
        "when rules are not confident. Loads .env before running."
    ),
)

# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
DATASET_OPTION: OptionInfo = typer.Option(
    ...,  # required
    "--dataset",
    help="Path to a JSON dataset (array of transactions or {'dataset': [...]})",
    dir_okay=False,
    file_okay=True,
    exists=False,  # the handler reports a friendlier error
)


def _exit(code: int) -> None:
    if code != 0:
        raise typer.Exit(code)


@app.command("batch-run")
def batch_run_cmd(
    *,
    org_id: str | None = typer.Option(None, help="Only process this organization."),
    max_batches: int | None = typer.Option(None, help="Batches to run (1-20, default 1)."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Categorize queued uncategorized transactions."""

    _exit(cmd_batch_run(org_id=org_id, max_batches=max_batches, database_url=database_url))


@app.command("evaluate")
def evaluate_cmd(
    dataset: Path = DATASET_OPTION,
    *,
    mode: str = typer.Option("pass1", help="pass1, pass2 or hybrid."),
    batch_size: int = typer.Option(10, help="Transactions per chunk (1-100)."),
    concurrency: int = typer.Option(1, help="Parallel workers per chunk (1-5)."),
    hybrid_threshold: float = typer.Option(0.95, help="Escalation threshold in hybrid mode."),
    industry: str | None = typer.Option(None, help="Industry vertical for the taxonomy."),
    csv_out: Path | None = typer.Option(None, help="Also write metrics as CSV to this path."),
) -> None:
    """Score the engine over a labelled dataset."""

    _exit(
        cmd_evaluate(
            dataset,
            mode=mode,
            batch_size=batch_size,
            concurrency=concurrency,
            hybrid_threshold=hybrid_threshold,
            industry=industry,
            csv_out=csv_out,
        )
    )


@app.command("seed-taxonomy")
def seed_taxonomy_cmd(
    *,
    database_url: str | None = DATABASE_URL_OPTION,
    file: Path = typer.Option(DEFAULT_SEED_PATH, help="Taxonomy seed JSON."),
) -> None:
    """Upsert the taxonomy seed into the categories table."""

    _exit(cmd_seed_taxonomy(database_url=database_url, file=file))


@app.command("taxonomy")
def taxonomy_cmd(
    *,
    industry: str | None = typer.Option(None, help="Industry vertical (default from config)."),
) -> None:
    """List leaf categories available for an industry."""

    _exit(cmd_taxonomy(industry=industry))


@app.callback()
def _root() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    # Central logging setup so child loggers inherit configuration
    configure_logging()


if __name__ == "__main__":  # pragma: no cover
    # Running as a module: `python -m hybrid_categorizer.cli`
    app()
