"""
VolumeScaler Controller - Logging Configuration.

Structured logging: JSON (production) или text (development).

Controller работает на каждой node, поэтому каждая запись несёт
identity реплики (node_name, pod_name): логи разных реплик можно
разделить без метаданных log shipper.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

from volumescaler.core.config import LogFormat, LoggingSettings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(node_name)s] %(message)s"
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


class ReplicaContextFilter(logging.Filter):
    """Добавляет identity реплики в каждую LogRecord."""

    def __init__(self, node_name: str = "", pod_name: str = ""):
        super().__init__()
        self.node_name = node_name
        self.pod_name = pod_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.node_name = self.node_name
        record.pod_name = self.pod_name
        return True


class ControllerJsonFormatter(JsonFormatter):
    """JSON formatter с application и replica контекстом."""

    def __init__(self, *args, app_name: str = "", app_version: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.app_name = app_name
        self.app_version = app_version

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        log_record['app_name'] = self.app_name
        log_record['app_version'] = self.app_version
        log_record['node_name'] = getattr(record, "node_name", "")
        log_record['pod_name'] = getattr(record, "pod_name", "")


def build_formatter(format_type: str, app_name: str, app_version: str) -> logging.Formatter:
    if format_type == LogFormat.JSON.value:
        return ControllerJsonFormatter(
            fmt='%(timestamp)s %(level)s %(name)s %(message)s',
            datefmt='%Y-%m-%dT%H:%M:%S',
            app_name=app_name,
            app_version=app_version,
        )
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def setup_logging(
    config: Optional[LoggingSettings] = None,
    app_name: str = "volumescaler-controller",
    app_version: str = "",
    node_name: str = "",
    pod_name: str = "",
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[Path] = None
) -> None:
    """
    Настройка root logger.

    Вызывается один раз в entry point до создания runtime.

    Args:
        config: Настройки логирования (LOG_*)
        app_name: Имя приложения для JSON логов
        app_version: Версия приложения для JSON логов
        node_name: NODE_NAME реплики
        pod_name: POD_NAME реплики
        level: Уровень логирования (перекрывает config)
        log_format: Формат логов json/text (перекрывает config)
        log_file: Путь к файлу логов (перекрывает config)
    """
    config = config or LoggingSettings()
    log_level = level or config.level.value
    format_type = log_format or config.format.value
    file_path = log_file or config.file

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    formatter = build_formatter(format_type, app_name, app_version)
    context = ReplicaContextFilter(node_name=node_name, pod_name=pod_name)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if file_path:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(file_path, encoding='utf-8'))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        handler.addFilter(context)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging configured",
        extra={
            "log_level": log_level,
            "log_format": format_type,
            "log_file": str(file_path) if file_path else None
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Получить logger с заданным именем.

    Args:
        name: Имя логгера (обычно __name__ модуля)
    """
    return logging.getLogger(name)
