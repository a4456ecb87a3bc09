"""Shared CLI helpers for running StoryFlow workflows."""

from __future__ import annotations

import argparse
import sys
from typing import Any, Optional, Type

from storyflow.services.provider_factory import TRANSPORTS


def build_run_parser(parser: Optional[argparse.ArgumentParser] = None) -> argparse.ArgumentParser:
    """Create or augment a parser with run-related arguments."""
    if parser is None:
        parser = argparse.ArgumentParser(
            description="StoryFlow Runner - execute StoryFlow workflows against Draw Things or ComfyUI"
        )

    parser.add_argument('workflow', type=str, help='Path to a workflow file (.json, .yaml or .yml)')
    parser.add_argument('--config', type=str, help='Path to storyflow.yaml (default: ./storyflow.yaml if present)')
    parser.add_argument('--working-dir', type=str, help='Directory that relative image paths resolve against')
    parser.add_argument('--transport', type=str, choices=TRANSPORTS, help='Generation transport (default: http)')
    parser.add_argument('--host', type=str, help='Generation server host')
    parser.add_argument('--port', type=int, help='Generation server port')
    parser.add_argument('--validate-only', action='store_true', help="Validate the workflow but don't run it")
    parser.add_argument('--force', action='store_true', help='Run even if validation reports errors')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')
    return parser


def run_workflow(args: argparse.Namespace, runner_cls: Type[Any]) -> None:
    """Execute a workflow using the provided arguments and runner class."""
    try:
        app = runner_cls(
            args.workflow,
            config_path=args.config,
            working_dir=args.working_dir,
            transport=args.transport,
            host=args.host,
            port=args.port,
            verbose=args.verbose,
        )
        success = app.run(validate_only=args.validate_only, force=args.force)
        sys.exit(0 if success else 1)
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Error: {exc}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)
