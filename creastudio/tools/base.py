import logging
from pydantic import BaseModel
from typing import Optional, List, Any

from creastudio.config.config import config
from creastudio.utils.logging_setup import configure_logging


class ToolResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    content: Optional[Any] = None
    output_path: Optional[str|List[str]] = None

    class Config:
        extra = "allow"


def setup_logger(name: str) -> logging.Logger:
    configure_logging(
        log_file=config["log_file"],
        level=config.get("log_level", "INFO"),
        enable_console=bool(config.get("log_console")),
        max_bytes=int(config.get("log_max_bytes") or 5_000_000),
        backup_count=int(config.get("log_backup_count") or 3),
    )
    return logging.getLogger(name)
