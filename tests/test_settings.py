from loguru import logger

from nodepool_sequencer.logger_config import setup_logger
from nodepool_sequencer.settings import Settings


def test_defaults(monkeypatch):
    for name in ("SEQUENCER_READINESS_WINDOW", "KUBE_CONTEXT", "LOG_FILE", "SEQUENCER_PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env(dotenv=False)
    assert settings.readiness_window == 30.0
    assert settings.cordon_retry_attempts == 3
    assert settings.kube_context is None
    assert settings.port == 8080


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SEQUENCER_READINESS_WINDOW", "90")
    monkeypatch.setenv("SEQUENCER_NODEPOOL_LABEL", "kubernetes.azure.com/agentpool")
    monkeypatch.setenv("KUBE_CONTEXT", "aks-prod-01-admin")
    monkeypatch.setenv("SEQUENCER_PORT", "9000")

    settings = Settings.from_env(dotenv=False)

    assert settings.readiness_window == 90.0
    assert settings.nodepool_label == "kubernetes.azure.com/agentpool"
    assert settings.kube_context == "aks-prod-01-admin"
    assert settings.port == 9000


def test_dotenv_file_is_loaded(monkeypatch, tmp_path):
    monkeypatch.delenv("SEQUENCER_AZ_TIMEOUT", raising=False)
    (tmp_path / ".env").write_text("SEQUENCER_AZ_TIMEOUT=120\n")
    monkeypatch.chdir(tmp_path)
    try:
        assert Settings.from_env().az_timeout == 120
    finally:
        monkeypatch.delenv("SEQUENCER_AZ_TIMEOUT", raising=False)


def test_setup_logger_writes_file(tmp_path):
    log_file = tmp_path / "sequencer.log"
    log = setup_logger("test-sequencer", "debug", str(log_file))
    try:
        log.debug("cordoned aks-nodepool1-0000")
        logger.complete()
        text = log_file.read_text()
        assert "test-sequencer" in text
        assert "cordoned aks-nodepool1-0000" in text
    finally:
        logger.remove()
