"""upletworker configuration settings."""

import json
import uuid
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping

from pydantic import Field, validator
from pydantic_settings import BaseSettings

from upletworker.common import UpletType

PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    worker_id: str = Field(default_factory=lambda: str(uuid.uuid4()), env="WORKER_ID")

    orchestrator_host: str = Field(default="localhost", env="ORCHESTRATOR_HOST")
    orchestrator_port: int = Field(default=8081, env="ORCHESTRATOR_PORT")
    orchestrator_user: str = Field(default="u", env="ORCHESTRATOR_USER")
    orchestrator_password: str = Field(default="p", env="ORCHESTRATOR_PASSWORD")

    storage_host: str = Field(default="localhost", env="STORAGE_HOST")
    storage_port: int = Field(default=8082, env="STORAGE_PORT")
    storage_user: str = Field(default="u", env="STORAGE_USER")
    storage_password: str = Field(default="p", env="STORAGE_PASSWORD")

    http_timeout: float = Field(
        default=30.0,
        env="HTTP_TIMEOUT",
        description="Total timeout in seconds for a single orchestrator or storage request.",
    )

    redis_host: str = Field(default="localhost", env="REDIS_HOST")
    redis_port: int = Field(default=6379, env="REDIS_PORT")
    redis_db: int = Field(default=0, env="REDIS_DB")
    redis_password: str = Field(default="", env="REDIS_PASSWORD")
    redis_key_prefix: str = Field(default="upletworker", env="REDIS_KEY_PREFIX")

    ledger_backend: str = Field(default="orchestrator", env="LEDGER_BACKEND")
    broker_backend: str = Field(default="redis", env="BROKER_BACKEND")
    blobstore_backend: str = Field(default="storage", env="BLOBSTORE_BACKEND")
    sandbox_backend: str = Field(default="docker", env="SANDBOX_BACKEND")

    blobstore_data_dir: str = Field(default="data/blobs", env="BLOBSTORE_DATA_DIR")
    workdir: str = Field(
        default="",
        env="WORKDIR",
        description="Parent directory of per-task workspaces. Empty means the system temp dir.",
    )

    docker_binary: str = Field(default="docker", env="DOCKER_BINARY")
    docker_image: str = Field(default="python:3.11-slim", env="DOCKER_IMAGE")
    sandbox_entrypoint: List[str] = Field(
        default_factory=lambda: ["python", "/algo/main.py"],
        env="SANDBOX_ENTRYPOINT",
        description="Command prefix run inside the sandbox; the operation name is appended.",
    )
    sandbox_memory_limit: str = Field(default="4g", env="SANDBOX_MEMORY_LIMIT")
    sandbox_cpus: float = Field(default=1.0, env="SANDBOX_CPUS")
    sandbox_pids_limit: int = Field(default=256, env="SANDBOX_PIDS_LIMIT")
    sandbox_timeout: int = Field(default=3600, env="SANDBOX_TIMEOUT")

    learn_topic: str = Field(default="learn", env="LEARN_TOPIC")
    predict_topic: str = Field(default="predict", env="PREDICT_TOPIC")
    learn_concurrency: int = Field(default=1, env="LEARN_CONCURRENCY")
    predict_concurrency: int = Field(default=1, env="PREDICT_CONCURRENCY")
    learn_timeout: int = Field(
        default=4 * 3600,
        env="LEARN_TIMEOUT",
        description="Upper bound for a whole learn handler, including blob transfers.",
    )
    predict_timeout: int = Field(default=3600, env="PREDICT_TIMEOUT")

    max_retries: int = Field(
        default=3,
        env="MAX_RETRIES",
        description="Times a message may be requeued after a retryable failure before it is dead-lettered.",
    )
    report_failure_retries: int = Field(default=5, env="REPORT_FAILURE_RETRIES")
    report_failure_backoff: float = Field(default=2.0, env="REPORT_FAILURE_BACKOFF")
    report_failure_backoff_cap: float = Field(default=30.0, env="REPORT_FAILURE_BACKOFF_CAP")
    drain_timeout: float = Field(default=60.0, env="DRAIN_TIMEOUT")
    poll_timeout: int = Field(default=5, env="POLL_TIMEOUT")

    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_dir: str = Field(default="logs", env="LOG_DIR")
    log_to_file: bool = Field(default=True, env="LOG_TO_FILE")
    log_backup_count: int = Field(default=5, env="LOG_BACKUP_COUNT")
    log_max_bytes: int = Field(default=104857600, env="LOG_MAX_BYTES")

    @validator("worker_id")
    def validate_worker_id(cls, v):
        return str(uuid.UUID(str(v)))

    @validator("sandbox_entrypoint", pre=True)
    def validate_sandbox_entrypoint(cls, v):
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return [str(x) for x in parsed]
            except ValueError:
                pass
            return v.split()
        return v

    def setup_log_directory(self) -> None:
        log_path = Path(self.log_dir)
        if not log_path.is_absolute():
            log_path = PROJECT_ROOT / log_path
        log_path.mkdir(parents=True, exist_ok=True)

    def get_redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def redis_url(self) -> str:
        return self.get_redis_url()

    @property
    def orchestrator_url(self) -> str:
        return f"http://{self.orchestrator_host}:{self.orchestrator_port}"

    @property
    def storage_url(self) -> str:
        return f"http://{self.storage_host}:{self.storage_port}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


settings = Settings()

def topic_configs(config: Settings) -> Mapping[str, Mapping[str, Any]]:
    """Read-only topic table: uplet type, handler concurrency and timeout per topic."""
    return MappingProxyType(
        {
            config.learn_topic: MappingProxyType(
                {
                    "uplet_type": UpletType.LEARN,
                    "concurrency": config.learn_concurrency,
                    "timeout": config.learn_timeout,
                }
            ),
            config.predict_topic: MappingProxyType(
                {
                    "uplet_type": UpletType.PREDICT,
                    "concurrency": config.predict_concurrency,
                    "timeout": config.predict_timeout,
                }
            ),
        }
    )


def log_directory() -> Path:
    """Absolute log directory; relative ``log_dir`` values resolve under the package root."""
    log_path = Path(settings.log_dir)
    if not log_path.is_absolute():
        log_path = PROJECT_ROOT / log_path
    return log_path


def _rotating_file(filename: str) -> Dict[str, Any]:
    return {
        "level": settings.log_level,
        "formatter": "detailed",
        "class": "logging.handlers.RotatingFileHandler",
        "filename": str(log_directory() / filename),
        "maxBytes": settings.log_max_bytes,
        "backupCount": settings.log_backup_count,
        "encoding": "utf8",
    }


def get_logging_config() -> Dict[str, Any]:
    settings.setup_log_directory()

    handlers: Dict[str, Any] = {
        "console": {
            "level": settings.log_level,
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        }
    }
    if settings.log_to_file:
        handlers["file_main"] = _rotating_file("upletworker.log")
        # One file per worker so several workers can share a host.
        handlers["file_worker"] = _rotating_file(f"worker-{settings.worker_id}.log")

    def with_files(*names: str) -> List[str]:
        return ["console"] + (list(names) if settings.log_to_file else [])

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s"},
            "detailed": {
                "format": "%(asctime)s %(levelname)-8s %(process)d %(name)s (%(filename)s:%(lineno)d): %(message)s"
            },
        },
        "handlers": handlers,
        "loggers": {
            "": {"handlers": with_files("file_main"), "level": settings.log_level, "propagate": False},
            "upletworker.worker": {
                "handlers": with_files("file_worker"),
                "level": settings.log_level,
                "propagate": False,
            },
            # Connection chatter from the client libraries.
            "aiohttp": {"handlers": ["console"], "level": "WARNING", "propagate": False},
            "redis": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        },
    }


def setup_logging(component_name: str = "worker"):
    import logging.config

    logging.config.dictConfig(get_logging_config())

    logger = logging.getLogger("upletworker.worker" if component_name == "worker" else "")
    logger.info(f"Logging configured for {component_name} (file logging: {settings.log_to_file})")
    if settings.log_to_file:
        logger.info(f"Writing logs under {log_directory()}")
    return logger
