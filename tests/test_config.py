import pytest
from pydantic import ValidationError

from conversation_engine.config import EngineSettings


class TestEngineSettings:

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.buffer_limits == {
            "conversation_history": 32000,
            "active_session": 4000,
            "context_summary": 8000,
            "memory_metadata": 2000,
        }
        assert settings.rotation_threshold == 0.8
        assert settings.archival_trigger_turns == 50
        assert settings.phase_thresholds == (2, 5, 10, 20)
        assert settings.strategy_weights["followup"] == 0.95

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_ENGINE_ARCHIVAL_TRIGGER_TURNS", "10")
        monkeypatch.setenv("CONVERSATION_ENGINE_LOG_LEVEL", "debug")

        settings = EngineSettings()

        assert settings.archival_trigger_turns == 10
        assert settings.log_level == "DEBUG"

    def test_kwargs_override_environment(self, monkeypatch):
        monkeypatch.setenv("CONVERSATION_ENGINE_HANDOFF_MAX_ATTEMPTS", "5")

        assert EngineSettings(handoff_max_attempts=2).handoff_max_attempts == 2

    @pytest.mark.parametrize("thresholds", [(0, 5, 10, 20), (2, 2, 10, 20), (5, 4, 10, 20)])
    def test_rejects_bad_phase_thresholds(self, thresholds):
        with pytest.raises(ValidationError):
            EngineSettings(phase_thresholds=thresholds)

    def test_rejects_unknown_log_format(self):
        with pytest.raises(ValidationError):
            EngineSettings(log_format="xml")

    def test_rejects_out_of_range_ratio(self):
        with pytest.raises(ValidationError):
            EngineSettings(rotation_threshold=1.5)
