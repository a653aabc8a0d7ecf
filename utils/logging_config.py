# utils/logging_config.py

import logging
import logging.handlers
import sys
from pathlib import Path
import json
from datetime import datetime

def setup_logging(log_level: str = "INFO", log_dir: str = "logs",
                  name: str = "gallery") -> logging.Logger:
    """
    Configure root logging with console, rotating text and JSON handlers

    Args:
        log_level: Level for the console handler
        log_dir: Directory receiving <name>.log and <name>_structured.json
        name: Base name of the log files
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Re-running setup must not stack handlers
    for handler in list(root.handlers):
        if getattr(handler, '_gallery_handler', False):
            root.removeHandler(handler)
            handler.close()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))

    # File handler (rotating)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{name}.log",
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    ))

    # JSON handler for structured logs
    json_handler = logging.handlers.RotatingFileHandler(
        log_path / f"{name}_structured.json",
        maxBytes=10*1024*1024,
        backupCount=5
    )
    json_handler.setLevel(logging.INFO)
    json_handler.setFormatter(JSONFormatter())

    for handler in (console_handler, file_handler, json_handler):
        handler._gallery_handler = True
        root.addHandler(handler)

    return logging.getLogger(name)


def log_operation(logger: logging.Logger, operation: str, **kwargs):
    """Log structured operation data"""
    data = {
        'operation': operation,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }
    logger.info(json.dumps(data, default=str))


class JSONFormatter(logging.Formatter):
    """Format logs as JSON"""

    def format(self, record):
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)
