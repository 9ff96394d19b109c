"""
Logging Service
Structured JSON logging with job/worker correlation for the transcoding pipeline.
"""

import json
import logging
import logging.config
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

# Context variables for job correlation
job_id_var: ContextVar[Optional[str]] = ContextVar('job_id', default=None)
worker_id_var: ContextVar[Optional[str]] = ContextVar('worker_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info', 'exc_text', 'stack_info', 'taskName',
}


def _context() -> Dict[str, str]:
    context = {}
    if job_id_var.get():
        context['job_id'] = job_id_var.get()
    if worker_id_var.get():
        context['worker_id'] = worker_id_var.get()
    if session_id_var.get():
        context['session_id'] = session_id_var.get()
    return context


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }
        log_data.update(_context())

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        extra_fields = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        if extra_fields:
            log_data['extra'] = extra_fields

        return json.dumps(log_data, default=str, ensure_ascii=False)


class TranscodingLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter carrying job/worker context"""

    def __init__(self, logger: logging.Logger, extra: Dict[str, Any] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**(self.extra or {}), **_context(), **kwargs.get('extra', {})}
        return msg, kwargs

    def log_transcoding_event(self, level: int, job_id: str, video_id: str,
                              quality: str, status: str, message: str = "", **kwargs):
        """Log transcoding-specific events"""
        extra = {
            'event_type': 'transcoding',
            'job_id': job_id,
            'video_id': video_id,
            'quality': quality,
            'status': status,
            **kwargs
        }
        self.log(level, message, extra=extra)

    def log_worker_event(self, level: int, worker_id: str, event: str, message: str = "", **kwargs):
        extra = {
            'event_type': 'worker',
            'worker_id': worker_id,
            'event': event,
            **kwargs
        }
        self.log(level, message, extra=extra)


def get_transcoding_logger(name: str = 'vidstream.transcoding', **extra) -> TranscodingLoggerAdapter:
    return TranscodingLoggerAdapter(logging.getLogger(name), extra)


def setup_logging(level: str = 'INFO', log_dir: Optional[str] = None, json_output: bool = True) -> None:
    """Configure root and pipeline loggers via dictConfig."""
    handlers: Dict[str, Dict[str, Any]] = {
        'console': {
            'class': 'logging.StreamHandler',
            'level': level,
            'formatter': 'json' if json_output else 'simple',
            'stream': sys.stdout
        }
    }
    pipeline_handlers = ['console']

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        handlers['file_all'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': 'DEBUG',
            'formatter': 'json',
            'filename': str(path / 'vidstream.log'),
            'maxBytes': 100 * 1024 * 1024,  # 100MB
            'backupCount': 10
        }
        handlers['file_transcoding'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': 'INFO',
            'formatter': 'json',
            'filename': str(path / 'transcoding.log'),
            'maxBytes': 50 * 1024 * 1024,  # 50MB
            'backupCount': 5
        }
        pipeline_handlers = ['console', 'file_all']

    config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'json': {
                '()': JSONFormatter,
            },
            'simple': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            }
        },
        'handlers': handlers,
        'loggers': {
            'vidstream.transcoding': {
                'level': level,
                'handlers': pipeline_handlers + (['file_transcoding'] if log_dir else []),
                'propagate': False
            },
            'sqlalchemy': {
                'level': 'WARNING',
                'handlers': ['console'],
                'propagate': False
            },
            'botocore': {
                'level': 'WARNING',
                'handlers': ['console'],
                'propagate': False
            }
        },
        'root': {
            'level': level,
            'handlers': pipeline_handlers
        }
    }

    logging.config.dictConfig(config)
