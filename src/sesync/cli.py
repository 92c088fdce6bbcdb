"""Command-line interface for SE-Sync."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

import numpy as np

from .measurements import num_poses, read_g2o
from .problem import FORMULATIONS, INITIALIZATIONS, PRECONDITIONERS
from .staircase import SESyncOpts, sesync

_DEFAULTS = SESyncOpts()


def _positive_int(value: str) -> int:
    try:
        out = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("expected an integer.") from exc
    if out <= 0:
        raise argparse.ArgumentTypeError("value must be positive.")
    return out


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m sesync.cli", description="Certifiably correct pose-graph SLAM.")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    p_info = sub.add_parser("info", help="Print the size of a g2o pose graph.")
    p_info.add_argument("path", type=str, help="Path to a .g2o file.")
    p_info.set_defaults(func=_cmd_info)

    p_run = sub.add_parser("run", help="Solve a g2o pose graph with the Riemannian Staircase.")
    p_run.add_argument("path", type=str, help="Path to a .g2o file.")
    p_run.add_argument("--r0", type=_positive_int, default=_DEFAULTS.r0, help=f"Initial relaxation rank (default {_DEFAULTS.r0}).")
    p_run.add_argument("--rmax", type=_positive_int, default=None, help=f"Maximum relaxation rank (default max(r0, {_DEFAULTS.rmax})).")
    p_run.add_argument("--formulation", choices=list(FORMULATIONS), default=_DEFAULTS.formulation)
    p_run.add_argument("--initialization", choices=list(INITIALIZATIONS), default=_DEFAULTS.initialization)
    p_run.add_argument("--preconditioner", choices=list(PRECONDITIONERS), default=_DEFAULTS.preconditioner)
    p_run.add_argument("--max-time", type=float, default=_DEFAULTS.max_computation_time, help="Computation time budget in seconds.")
    p_run.add_argument("--num-threads", type=_positive_int, default=_DEFAULTS.num_threads)
    p_run.add_argument("--seed", type=int, default=None)
    p_run.add_argument("--verbose", action="store_true", default=False)
    p_run.add_argument("--output", type=str, default=None, help="Save the estimate and traces to this .npz file.")
    p_run.set_defaults(func=_cmd_run)
    return parser


def _cmd_info(args: argparse.Namespace) -> int:
    measurements = read_g2o(args.path)
    print(f"poses: {num_poses(measurements)}")
    print(f"dimension: {measurements[0].d}")
    print(f"measurements: {len(measurements)}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    measurements = read_g2o(args.path)
    r0 = int(args.r0)
    rmax = args.rmax if args.rmax is not None else max(r0, _DEFAULTS.rmax)
    opts = SESyncOpts(
        r0=r0,
        rmax=rmax,
        formulation=str(args.formulation),
        initialization=str(args.initialization),
        preconditioner=str(args.preconditioner),
        max_computation_time=float(args.max_time),
        num_threads=int(args.num_threads),
        seed=args.seed,
        verbose=bool(args.verbose),
    )
    result = sesync(measurements, opts)
    print(result.summary())

    if args.output is not None:
        out = Path(args.output)
        payload = dict(
            status=np.array(result.status.value),
            ranks=np.asarray(result.ranks, dtype=int),
            Yopt=np.asarray(result.Yopt),
            SDPval=np.array(result.SDPval),
            function_values=np.concatenate([np.asarray(v, dtype=float) for v in result.function_values])
            if result.function_values
            else np.zeros(0),
            lobpcg_iters=np.asarray(result.lobpcg_iters, dtype=int),
            escape_direction_curvatures=np.asarray(result.escape_direction_curvatures, dtype=float),
            total_computation_time=np.array(result.total_computation_time),
        )
        if result.xhat is not None:
            payload.update(
                xhat=result.xhat,
                Fxhat=np.array(result.Fxhat),
                trLambda=np.array(result.trLambda),
                suboptimality_bound=np.array(result.suboptimality_bound),
            )
        np.savez(out, **payload)
        print(f"saved: {out}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
