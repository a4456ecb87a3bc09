#!/usr/bin/env python3
"""
StoryFlow Runner - execute StoryFlow workflows outside Draw Things

Validates a workflow file, then walks its instructions against a generation
server (Draw Things HTTP API or ComfyUI), saving images into a working
directory.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from cli.runner import build_run_parser, run_workflow
from storyflow.config.config_store import ConfigStore
from storyflow.constants import LOG_FILENAME
from storyflow.io.workflow_file import instruction_summary, load_workflow
from storyflow.model.generation_config import GenerationConfig
from storyflow.services.executor import ExecutionResult, ExecutionStatus, ExecutionStepResult, WorkflowExecutor
from storyflow.services.image_storage import ImageStorage
from storyflow.services.provider_factory import create_provider
from storyflow.services.validator import validate
from storyflow.services.workflow_analysis import analyze_workflow


class StoryflowRunner:
    """Loads settings and a workflow, then validates and executes it."""

    def __init__(
        self,
        workflow_path: str,
        config_path: Optional[str] = None,
        working_dir: Optional[str] = None,
        transport: Optional[str] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        verbose: bool = False,
    ):
        self.workflow_path = Path(workflow_path)
        self.verbose = verbose

        # Load configuration; command-line flags win over the file
        self.settings = ConfigStore(config_path).load()
        connection = self.settings["connection"]
        if transport:
            connection["transport"] = transport
        if host:
            connection["host"] = host
        if port:
            connection["port"] = port

        self.working_dir = Path(working_dir or self.settings["working_directory"]).expanduser()
        self.working_dir.mkdir(parents=True, exist_ok=True)

        # Setup logging
        self._setup_logging()

        self.instructions = load_workflow(self.workflow_path)

    def _setup_logging(self):
        """Setup application logging."""
        log_settings = self.settings.get("logging") or {}
        log_file = Path(log_settings["file"]) if log_settings.get("file") else self.working_dir / "logs" / LOG_FILENAME
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if self.verbose:
            log_level = logging.DEBUG
        else:
            log_level = getattr(logging, str(log_settings.get("level", "INFO")).upper(), logging.INFO)

        logging.basicConfig(
            level=log_level,
            format='%(asctime)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler(log_file),
                logging.StreamHandler()
            ]
        )
        self.logger = logging.getLogger("storyflow")

    def _validate(self) -> bool:
        result = validate(self.instructions)
        for issue in result.errors:
            self.logger.error(f"Validation error: {issue.message}")
        for issue in result.warnings:
            self.logger.warning(f"Validation warning: {issue.message}")
        self.logger.info(f"Validation: {result.summary}")

        analysis = analyze_workflow(self.instructions)
        self.logger.info(
            f"Support: {analysis.full} full, {analysis.partial} partial, "
            f"{analysis.unsupported} not supported"
        )
        counts = ", ".join(f"{key}={count}" for key, count in sorted(instruction_summary(self.instructions).items()))
        self.logger.debug(f"Instructions: {counts}")
        return result.is_valid

    def _on_step(self, step: ExecutionStepResult) -> None:
        self.logger.info(f"  [{step.index + 1}] {step.outcome.value.upper():7} {step.title}: {step.message}")

    def _log_summary(self, result: ExecutionResult) -> None:
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Status: {result.status.value}")
        self.logger.info(
            f"Steps: {result.executed_count} executed, {result.skipped_count} skipped, "
            f"{result.failed_count} failed"
        )
        self.logger.info(f"Images generated: {len(result.images)}")
        for record in result.images:
            if record.filename:
                self.logger.info(f"  saved {self.working_dir / record.filename}")
        if result.error_message:
            self.logger.error(result.error_message)
        self.logger.info(f"Elapsed: {result.elapsed_ms / 1000:.1f}s\n{'='*60}")

    def run(self, validate_only: bool = False, force: bool = False) -> bool:
        """Validate and (unless `validate_only`) execute the workflow."""
        self.logger.info(f"{'='*60}\nStoryFlow Runner\n{'='*60}")
        self.logger.info(f"Workflow: {self.workflow_path} ({len(self.instructions)} instructions)")
        self.logger.info(f"Working directory: {self.working_dir}")

        valid = self._validate()
        if validate_only:
            return valid

        execution = self.settings.get("execution") or {}
        if not valid and not (force or execution.get("run_on_validation_errors")):
            self.logger.error("Workflow has validation errors; use --force to run anyway")
            return False

        if not analyze_workflow(self.instructions).has_generation_trigger:
            self.logger.error("Workflow has no generation trigger (canvasSave, loopSave or generate); nothing to run")
            return False

        provider = create_provider(self.settings["connection"], logger=self.logger)
        if not provider.check_connection():
            self.logger.error(f"Cannot connect to the {provider.transport} generation server!")
            return False

        initial_config = GenerationConfig().merged(self.settings.get("defaults") or {})
        executor = WorkflowExecutor(
            provider,
            ImageStorage(self.working_dir, logger=self.logger),
            logger=self.logger,
            abort_on_provider_failure=bool(execution.get("abort_on_provider_failure")),
            initial_config=initial_config,
        )
        executor.on_instruction_complete = self._on_step

        result = executor.execute(self.instructions)
        self._log_summary(result)
        return result.status in (ExecutionStatus.COMPLETED, ExecutionStatus.STOPPED)


def main():
    """Main entry point."""
    parser = build_run_parser()
    args = parser.parse_args()
    run_workflow(args, StoryflowRunner)


if __name__ == '__main__':
    main()
