"""Command-line interface for jetflow using argparse."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from jetflow.core.errors import ConfigurationError
from jetflow.io.hdf5 import ArtifactTree, InputCollection
from jetflow.workflows.jet_flow import JetFlowConfig, JetFlowUnfolder


def cmd_unfold(args: argparse.Namespace) -> int:
    try:
        config = JetFlowConfig.from_file(args.config)
        inputs = InputCollection.load(args.input)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    if args.label:
        config.label = args.label
    if args.overwrite:
        config.overwrite = True
    with ArtifactTree(args.output) as tree:
        unfolder = JetFlowUnfolder(config, output=tree)
        unfolder.set_input_collection(inputs)
        output = unfolder.make()
        if output.success and args.save_profiles:
            unfolder.save_profiles()
    if not output.success:
        print(f"Unfolding run {output.label} failed: {output.error}", file=sys.stderr)
        return 1
    print(
        f"Run {output.label}: in plane converged={output.converged_in}, "
        f"out of plane converged={output.converged_out}"
    )
    print(f"Wrote results to {args.output}")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    with ArtifactTree(args.file, mode="r") as tree:
        for path, kind in tree.listing():
            print(f"{path}  [{kind}]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Unfolding of event-plane dependent jet spectra")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    unfold = subparsers.add_parser("unfold", help="Unfold in-plane and out-of-plane spectra")
    unfold.add_argument("--config", type=Path, required=True, help="JSON or YAML configuration")
    unfold.add_argument("--input", type=Path, required=True, help="HDF5 input collection")
    unfold.add_argument("--output", type=Path, default=Path("unfolded_spectra.h5"))
    unfold.add_argument("--label", help="Run label, overrides the configuration")
    unfold.add_argument("--overwrite", action="store_true", help="Replace a run with the same label")
    unfold.add_argument("--save-profiles", action="store_true", help="Also write the RMS profiles")
    unfold.set_defaults(func=cmd_unfold)

    inspect = subparsers.add_parser("inspect", help="List the artifacts of an output file")
    inspect.add_argument("file", type=Path)
    inspect.set_defaults(func=cmd_inspect)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
