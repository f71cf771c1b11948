import logging
import json
import sys
from datetime import datetime
from typing import Any, Dict

from narrative_dispatch.core.config import settings

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs', 'message',
    'pathname', 'process', 'processName', 'relativeCreated', 'thread',
    'threadName', 'exc_info', 'exc_text', 'stack_info', 'extra_data',
    'taskName',
}


class JSONFormatter(logging.Formatter):
    """Uma linha JSON por registro de log."""
    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_data"):
            log_obj["data"] = record.extra_data

        # Atributos passados via extra={} (job_id, provider, window...)
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith('_'):
                continue
            log_obj[key] = value

        return json.dumps(log_obj, ensure_ascii=False, default=str)


def setup_logging(level: int = logging.INFO, to_file: bool = True):
    """
    Configura o root logger para emitir JSON no stdout e, opcionalmente, em arquivo.

    Logs são salvos em:
    - Console: stdout (formato JSON)
    - Arquivo: <LOGS_DIR>/dispatch_YYYYMMDD.log (formato JSON, um arquivo por dia)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if to_file:
        logs_dir = settings.LOGS_DIR
        logs_dir.mkdir(parents=True, exist_ok=True)
        log_filename = logs_dir / f"dispatch_{datetime.now().strftime('%Y%m%d')}.log"

        file_handler = logging.FileHandler(log_filename, encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

        logging.getLogger(__name__).info(f"📝 Logs sendo salvos em: {log_filename.absolute()}")

    # Reduzir ruído de bibliotecas de terceiros
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
