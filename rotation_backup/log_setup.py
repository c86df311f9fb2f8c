"""
Logging setup for the command line tools.

Console output on stdout plus a dated log file; optionally one JSON object
per record.
"""

import sys
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StructuredFormatter(logging.Formatter):
    """Structured JSON formatter for logs."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if hasattr(record, 'granularity'):
            log_entry['granularity'] = record.granularity
        if hasattr(record, 'run_id'):
            log_entry['run_id'] = record.run_id

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None, json_format: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    formatter = StructuredFormatter() if json_format else logging.Formatter(LOG_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(
            log_path / f'rotation_backup_{datetime.now().strftime("%Y%m%d")}.log', delay=True
        ))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
