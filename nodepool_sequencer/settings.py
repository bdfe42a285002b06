import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass(frozen=True)
class Settings:
    # Phase 1 waits this long for destination nodes to become Ready
    readiness_window: float = 30.0
    readiness_poll_interval: float = 5.0
    termination_poll_interval: float = 2.0
    cordon_retry_attempts: int = 3
    retry_backoff: float = 1.0
    retry_backoff_max: float = 10.0
    session_retention: float = 3600.0
    heartbeat_interval: float = 15.0
    nodepool_label: str = "agentpool"
    az_binary: str = "az"
    az_timeout: int = 600
    kube_context: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 8080

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))
        return cls(
            readiness_window=_float_env("SEQUENCER_READINESS_WINDOW", 30.0),
            readiness_poll_interval=_float_env("SEQUENCER_READINESS_POLL_INTERVAL", 5.0),
            termination_poll_interval=_float_env("SEQUENCER_TERMINATION_POLL_INTERVAL", 2.0),
            cordon_retry_attempts=_int_env("SEQUENCER_CORDON_RETRY_ATTEMPTS", 3),
            retry_backoff=_float_env("SEQUENCER_RETRY_BACKOFF", 1.0),
            retry_backoff_max=_float_env("SEQUENCER_RETRY_BACKOFF_MAX", 10.0),
            session_retention=_float_env("SEQUENCER_SESSION_RETENTION", 3600.0),
            heartbeat_interval=_float_env("SEQUENCER_HEARTBEAT_INTERVAL", 15.0),
            nodepool_label=os.getenv("SEQUENCER_NODEPOOL_LABEL", "agentpool"),
            az_binary=os.getenv("SEQUENCER_AZ_BINARY", "az"),
            az_timeout=_int_env("SEQUENCER_AZ_TIMEOUT", 600),
            kube_context=os.getenv("KUBE_CONTEXT") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            host=os.getenv("SEQUENCER_HOST", "127.0.0.1"),
            port=_int_env("SEQUENCER_PORT", 8080),
        )
