from config.config import Config
from services.service_manager import ServiceManager, get_download_orchestrator, service_manager


def test_service_manager_is_a_singleton():
    assert ServiceManager() is service_manager


def test_orchestrator_built_from_config_and_environment(tmp_path, monkeypatch):
    monkeypatch.setattr(Config, "CONFIG_FILE", str(tmp_path / "config.txt"))
    monkeypatch.setenv("INGEST_DIR", str(tmp_path / "ingest"))
    monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "4")
    service_manager.shutdown()
    try:
        orchestrator = get_download_orchestrator()

        assert get_download_orchestrator() is orchestrator
        assert orchestrator.settings.ingest_dir == str(tmp_path / "ingest")
        assert orchestrator.worker_pool.size == 4
        assert (tmp_path / "config.txt").exists()
    finally:
        service_manager.shutdown(timeout=5)

    assert orchestrator.get_service_status()['accepting_jobs'] is False
