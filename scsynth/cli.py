"""Command-line interface for simulating from a reference .h5ad file."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Iterable

import scanpy as sc

from scsynth.config import load_sim_config
from scsynth.core.construct import corr_group_labels
from scsynth.core.types import GROUP_COL, SimConfig
from scsynth.covariates import resample_covariates
from scsynth.io import counts_from_anndata, result_to_anndata, setup_logger, write_json
from scsynth.pipeline import run_simulation


def _read_adata(h5ad_path: str):
    path = Path(h5ad_path)
    if not path.exists():
        raise FileNotFoundError(f"Input file '{h5ad_path}' not found.")
    return sc.read_h5ad(path)


def _parse_proportions(text: str | None) -> dict[str, float] | None:
    if text is None:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"--proportions must be a JSON object: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValueError("--proportions must be a JSON object mapping group to fraction.")
    return {str(k): float(v) for k, v in data.items()}


def simulate_main(argv: Iterable[str] | None = None) -> int:
    """Fit a reference dataset and write a synthetic .h5ad.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code (0 for success).
    """
    parser = argparse.ArgumentParser(description="Simulate counts from a reference .h5ad")
    parser.add_argument("--h5ad", required=True, help="Reference .h5ad file")
    parser.add_argument("--out", required=True, help="Output .h5ad path")
    parser.add_argument("--config", default=None, help="JSON config with SimConfig keys")
    parser.add_argument("--seed", type=int, default=None, help="Override config seed")
    parser.add_argument("--n-workers", type=int, default=None, help="Override worker bound")
    parser.add_argument(
        "--n-cells", type=int, default=None, help="Cells to simulate (default: as reference)"
    )
    parser.add_argument(
        "--proportions",
        default=None,
        help='JSON mapping of corr_group to fraction, e.g. \'{"B": 0.2, "C": 0.8}\'',
    )
    parser.add_argument("--log", default=None, help="Log file (default: <out>.log)")
    args = parser.parse_args(list(argv) if argv is not None else None)

    out_path = Path(args.out)
    log_path = Path(args.log) if args.log else out_path.with_suffix(".log")
    logger = setup_logger(log_path, "scsynth")

    if args.config:
        cfg = load_sim_config(args.config, seed=args.seed, n_workers=args.n_workers)
    else:
        overrides = {"seed": args.seed, "n_workers": args.n_workers}
        cfg = SimConfig.from_dict({k: v for k, v in overrides.items() if v is not None})
    logger.info("Config: %s", json.dumps(cfg.to_dict(), sort_keys=True))

    adata = _read_adata(args.h5ad)
    counts, covariates, genes = counts_from_anndata(adata, cfg.assay)
    logger.info("Reference: %d cells x %d genes from %s", adata.n_obs, adata.n_vars, args.h5ad)

    new_covariates = None
    proportions = _parse_proportions(args.proportions)
    if args.n_cells is not None or proportions is not None:
        reference = covariates.copy()
        reference[GROUP_COL] = corr_group_labels(
            reference.drop(columns=[GROUP_COL], errors="ignore"), cfg.corr_formula
        )
        n_cells = args.n_cells if args.n_cells is not None else reference.shape[0]
        new_covariates = resample_covariates(reference, n_cells, proportions, seed=cfg.seed)
        logger.info("Counterfactual covariates: %d cells", new_covariates.shape[0])

    result = run_simulation(
        counts, covariates, cfg, new_covariates=new_covariates, gene_names=genes
    )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    result_to_anndata(result, layer=cfg.assay).write_h5ad(out_path)
    write_json(out_path.with_name("diagnostics.json"), result.diagnostics.to_dict())
    for message in result.diagnostics.messages:
        logger.warning(message)
    logger.info("Wrote %s", out_path.as_posix())
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (if None, uses sys.argv).

    Returns:
        Exit code.
    """
    parser = argparse.ArgumentParser(description="scsynth CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("simulate", help="Simulate synthetic counts from a reference")

    args, remainder = parser.parse_known_args(list(argv) if argv is not None else None)
    if args.command == "simulate":
        return simulate_main(remainder)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
