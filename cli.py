"""pstress command-line interface."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys

_VERSION = "0.1.0"


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="pstress",
        description="p-adaptive linear-elastic stress analysis",
    )
    parser.add_argument("--version", action="version", version="pstress v%s" % _VERSION)

    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run an adaptive analysis of a block cantilever")
    run.add_argument("--config", help="YAML settings file")
    run.add_argument("--material", default="Steel 4140")
    run.add_argument("--size", type=float, nargs=3, default=[0.1, 0.02, 0.02],
                     metavar=("LX", "LY", "LZ"), help="Block size [m]")
    run.add_argument("--divisions", type=int, nargs=3, default=[4, 1, 1],
                     metavar=("NX", "NY", "NZ"))
    run.add_argument("--p", type=int, default=1, help="Initial polynomial order")
    run.add_argument("--load", type=float, nargs=3, default=[0.0, 0.0, -1000.0],
                     metavar=("FX", "FY", "FZ"),
                     help="Total end load on the xmax face [N]")
    run.add_argument("--gravity", action="store_true", help="Add self-weight (-z)")
    run.add_argument("--tolerance", type=float, help="Error tolerance (fraction)")
    run.add_argument("--max-passes", type=int, help="Adaptive loop maximum")
    run.add_argument("--max-p", type=int, help="Polynomial order cap")
    run.add_argument("--workers", type=int, help="Assembly worker threads")
    run.add_argument("--log-dir", help="Directory for app.log and JSONL records")
    run.add_argument("--json", dest="json_path", help="Write a JSON summary here")
    run.add_argument("-v", "--verbose", action="store_true")

    show = sub.add_parser("config", help="Print the effective settings as YAML")
    show.add_argument("--config", help="YAML settings file")

    return parser


def _build_model(args):
    import numpy as np

    from pstress.fea.model import (
        DisplacementConstraint,
        Material,
        NodalForce,
        VolumeForce,
        build_block_model,
    )

    material = Material.from_table(args.material)
    model = build_block_model(tuple(args.size), tuple(args.divisions), material, p=args.p)
    model.constraints.append(
        DisplacementConstraint(nodes=tuple(model.node_set("xmin")), name="xmin fixed")
    )

    end_nodes = model.node_set("xmax")
    load = np.asarray(args.load, dtype=np.float64)
    if np.any(load != 0.0):
        share = load / len(end_nodes)
        for n in end_nodes:
            model.nodal_forces.append(NodalForce(node=int(n), force=tuple(share)))
    if args.gravity:
        model.volume_forces.append(VolumeForce(kind="gravity", acceleration=(0.0, 0.0, -9.81)))
    return model


def _print_pass(data):
    print(
        "  pass %d: p<=%d, %d equations, error %.2f%%"
        % (data["pass_number"], data["max_p"], data["n_equations"], 100.0 * data["error"])
    )


def _do_run(args):
    from pstress.core.config import AppConfig
    from pstress.core.event_bus import PASS_RECORDED, EventBus
    from pstress.core.logger import StructuredLogger
    from pstress.fea.config import AnalysisSettings
    from pstress.fea.controller import AdaptiveController
    from pstress.fea.errors import ConfigurationError
    from pstress.fea.results import format_report

    config = AppConfig(args.config)
    overrides = {
        "analysis.error_tolerance": args.tolerance,
        "analysis.adapt_loop_max": args.max_passes,
        "analysis.max_p": args.max_p,
        "assembly.workers": args.workers,
        "logging.dir": args.log_dir,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.get("logging.level", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    slog = StructuredLogger(config.get("logging.dir"), config.get("logging.level", "INFO"))

    try:
        settings = AnalysisSettings.from_app_config(config)
        model = _build_model(args)
        bus = EventBus()
        bus.subscribe(PASS_RECORDED, _print_pass)
        controller = AdaptiveController(
            model, settings, event_bus=bus, structured_logger=slog,
        )
        result = controller.run()
    except ConfigurationError as exc:
        print("Configuration error: %s" % exc, file=sys.stderr)
        return 2
    finally:
        slog.close()

    print(format_report(result))

    if args.json_path:
        os.makedirs(os.path.dirname(os.path.abspath(args.json_path)), exist_ok=True)
        summary = {
            "state": result.state,
            "termination_reason": result.termination_reason,
            "passes": [r.as_dict() for r in result.passes],
            "n_equations": result.n_equations,
            "max_displacement": result.max_displacement,
            "error_message": result.error_message,
        }
        with open(args.json_path, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print("  JSON summary: %s" % args.json_path)

    return 1 if result.failed else 0


def _do_config(args):
    from pstress.core.config import AppConfig

    print(AppConfig(args.config).dump(), end="")
    return 0


def main():
    parser = _build_parser()
    args = parser.parse_args()

    if args.command == "run":
        return _do_run(args)
    elif args.command == "config":
        return _do_config(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
