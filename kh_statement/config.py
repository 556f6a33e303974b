"""
Runtime configuration, read from environment variables.

    KH_OUTPUT_DIR         base directory for generated documents
    KH_DATA_FILE          JSON workspace with taxpayer settings and invoices
    KH_SUBMISSIONS_FILE   JSON file holding the submission history
    KH_LOG_LEVEL          logging level name (default INFO)
    KH_SOFTWARE_NAME      value written to the document's nazevSW attribute
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class AppSettings(BaseModel):
    output_dir: Path = Field(
        default=Path("output"), description="Base directory for generated documents."
    )
    data_file: Path = Field(
        default=Path("data/workspace.json"), description="Invoice workspace file."
    )
    submissions_file: Path = Field(
        default=Path("data/submissions.json"), description="Submission history file."
    )
    log_level: str = "INFO"
    software_name: str = "kh-statement"


def load_settings() -> AppSettings:
    """Build settings from the environment, falling back to defaults."""
    defaults = AppSettings()
    return AppSettings(
        output_dir=Path(os.getenv("KH_OUTPUT_DIR", str(defaults.output_dir))),
        data_file=Path(os.getenv("KH_DATA_FILE", str(defaults.data_file))),
        submissions_file=Path(os.getenv("KH_SUBMISSIONS_FILE", str(defaults.submissions_file))),
        log_level=os.getenv("KH_LOG_LEVEL", defaults.log_level),
        software_name=os.getenv("KH_SOFTWARE_NAME", defaults.software_name),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
