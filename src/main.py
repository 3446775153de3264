"""Main entry point for the clinical survival pipeline.

Derives a survival endpoint from raw clinical records, describes survival by
group, fits Cox and lasso Cox models, checks proportional hazards, validates
discrimination (train/test and out-of-bag bootstrap) and optionally ranks
covariates with a random survival forest.

Raw records come from a simulated cohort, the GDC API, or a CSV/pickle file.

Can be used as CLI or imported as a function.
"""
from clinical_survival.config import PipelineConfig, create_execution_config
from clinical_survival.errors import SchemaError, InsufficientDataError
from clinical_survival.logging_config import setup_logging, shutdown_logging
from clinical_survival.pipeline import load_raw_records, run_pipeline
from clinical_survival.utils import versioned_name
import os
import logging
import argparse
from dataclasses import replace
from typing import Optional


def run(
    config: PipelineConfig,
    output_dir: str,
    input_file: Optional[str] = None,
    log_level: int = logging.INFO,
) -> int:
    """Run the pipeline end to end with logging set up for the run.

    Args:
        config: Pipeline configuration
        output_dir: Root directory for every artifact of this run
        input_file: CSV or pickle input, required when config.source == "file"
        log_level: Console log level

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> from main import run
        >>> run(PipelineConfig.for_source("simulate"), "outputs/sim")
        0
    """
    logger = setup_logging(os.path.join(output_dir, "logs"), log_level=log_level)
    try:
        logger.info("=" * 70)
        logger.info(f"CLINICAL SURVIVAL PIPELINE - source={config.source}")
        logger.info("=" * 70)
        raw = load_raw_records(config, input_file)
        result = run_pipeline(raw, config, output_dir, logger=logger)
        logger.info(f"Run completed successfully: {result.output_dir}")
        return 0
    except SchemaError as e:
        logger.error(f"Schema error: {e}")
        return 1
    except InsufficientDataError as e:
        logger.error(f"Insufficient data in stage '{e.stage}': {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"Input file not found: {e}")
        return 1
    finally:
        shutdown_logging(logger)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Build a PipelineConfig from parsed CLI arguments.

    A ``--config`` JSON file is the starting point when given; otherwise the
    defaults for ``--source`` are used. Explicit CLI flags override either.
    """
    if args.config:
        config = PipelineConfig.load(args.config)
        if args.source:
            config.source = args.source
    else:
        config = PipelineConfig.for_source(args.source or "simulate")

    overrides = {
        "seed": args.seed,
        "train_fraction": args.train_fraction,
        "n_bootstrap": args.n_bootstrap,
    }
    if args.no_lasso:
        overrides["run_lasso"] = False
    if args.no_ensemble:
        overrides["run_ensemble"] = False
    # replace() re-runs AnalysisConfig validation on the overridden values
    config.analysis = replace(
        config.analysis, **{k: v for k, v in overrides.items() if v is not None}
    )
    if args.project:
        config.project = args.project
    if args.track:
        config.tracking_enabled = True
    if args.execution_mode is not None:
        config.execution = create_execution_config(
            mode=args.execution_mode, n_jobs=args.n_jobs, verbose=args.verbose
        )
    return config


def main(argv=None):
    """Main execution function with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Clinical survival analysis - endpoint derivation, Cox models and validation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Simulated cohort (n=500, seed 123)
  python src/main.py --source simulate --output-dir outputs/sim

  # TCGA-BRCA clinical data from the GDC API, 200 bootstrap iterations on 4 cores
  python src/main.py --source gdc --output-dir outputs/brca --execution-mode mp --n-jobs 4

  # Local clinical export, tracked in MLflow
  python src/main.py --source file --input data/clinical.csv --output-dir outputs/local --track
        """
    )

    parser.add_argument(
        "--source",
        type=str,
        choices=["simulate", "gdc", "file"],
        default=None,
        help="Where raw records come from. Default: simulate (or the --config value)"
    )
    parser.add_argument("--input", type=str, default=None,
                        help="Path to input file (CSV or pickle) for --source file")
    parser.add_argument("--project", type=str, default=None,
                        help="GDC project identifier for --source gdc. Default: TCGA-BRCA")
    parser.add_argument("--output-dir", type=str, default=None,
                        help="Directory for tables, canonical records and logs. "
                             "Default: outputs/<source>_run_<timestamp>")
    parser.add_argument("--config", type=str, default=None,
                        help="Pipeline configuration JSON (as written to <output-dir>/config.json)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for simulation, train/test split and bootstrap draws")
    parser.add_argument("--train-fraction", type=float, default=None,
                        help="Fraction of records in the training partition. Default: 0.7")
    parser.add_argument("--n-bootstrap", type=int, default=None,
                        help="Bootstrap iterations. Default: 200")

    parser.add_argument(
        "--execution-mode",
        type=str,
        choices=["pandas", "mp"],
        default=None,
        help="Bootstrap execution: 'pandas' (sequential) or 'mp' (joblib workers). Default: pandas"
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=-1,
        help="Number of parallel jobs for 'mp'. -1 means use all cores. Default: -1"
    )
    parser.add_argument(
        "--verbose",
        type=int,
        default=0,
        choices=[0, 10, 50],
        help="Joblib verbosity: 0 (silent), 10 (progress), 50 (detailed). Default: 0"
    )

    parser.add_argument("--no-lasso", action="store_true", help="Skip the lasso Cox model")
    parser.add_argument("--no-ensemble", action="store_true",
                        help="Skip the random survival forest")
    parser.add_argument("--track", action="store_true",
                        help="Log the run to MLflow under <output-dir>/mlruns")
    parser.add_argument("--debug", action="store_true", help="Debug-level console logging")

    args = parser.parse_args(argv)
    source = args.source or ("file" if args.input else None)
    args.source = source

    config = build_config(args)
    if config.source == "file" and not args.input:
        parser.error("--input is required with --source file")

    output_dir = args.output_dir or os.path.join("outputs", versioned_name("run", source=config.source))
    return run(
        config,
        output_dir,
        input_file=args.input,
        log_level=logging.DEBUG if args.debug else logging.INFO,
    )


if __name__ == "__main__":
    exit(main())
