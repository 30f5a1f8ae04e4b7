#!/usr/bin/env python3
"""
Progress logging for orchestration runs.

Every provisioning, troubleshooting and teardown step reports a free-form
status line through a ProgressLogger. Errors and warnings are also kept in
memory so a run report can be produced at the end.
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("vnet_orchestrator.progress")


def configure_logging(level: int = logging.INFO, log_dir: Optional[str] = None):
    """Configure root logging to stdout, plus a file under LOG_DIR when set."""
    handlers = [logging.StreamHandler(sys.stdout)]

    log_dir = log_dir or os.getenv("LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "vnet_orchestrator.log")))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


class ProgressLogger:
    """Status-line sink shared by the executor, orchestrator and teardown guard."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger
        self.start_time = datetime.now()
        self.steps = []
        self.errors = []
        self.warnings = []

    def log_step(self, message: str):
        self.steps.append(message)
        self.logger.info(message)

    def log_success(self, message: str):
        self.steps.append(message)
        self.logger.info(f"SUCCESS: {message}")

    def log_error(self, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log an error with context."""
        self.errors.append({
            "timestamp": datetime.now().isoformat(),
            "error": error_msg,
            "context": context or {},
        })
        self.logger.error(f"ERROR: {error_msg}")
        if context:
            self.logger.error(f"Context: {json.dumps(context, indent=2, default=str)}")

    def log_warning(self, warning_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log a warning with context."""
        self.warnings.append({
            "timestamp": datetime.now().isoformat(),
            "warning": warning_msg,
            "context": context or {},
        })
        self.logger.warning(f"WARNING: {warning_msg}")
        if context:
            self.logger.warning(f"Context: {json.dumps(context, indent=2, default=str)}")

    def generate_report(self, report_path: Optional[str] = None) -> Dict[str, Any]:
        """Summarize the run; written as JSON when a path is given."""
        report = {
            "start_time": self.start_time.isoformat(),
            "end_time": datetime.now().isoformat(),
            "steps": list(self.steps),
            "errors": self.errors,
            "warnings": self.warnings,
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
        }

        if report_path:
            with open(report_path, "w") as f:
                json.dump(report, f, indent=2)

        self.logger.info("=" * 60)
        self.logger.info("RUN REPORT SUMMARY")
        self.logger.info("=" * 60)
        self.logger.info(f"Steps: {len(self.steps)}")
        self.logger.info(f"Total Errors: {len(self.errors)}")
        self.logger.info(f"Total Warnings: {len(self.warnings)}")
        if report_path:
            self.logger.info(f"Report saved to: {report_path}")
        self.logger.info("=" * 60)

        return report
