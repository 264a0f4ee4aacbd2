import pytest

import scripture_api.events as events_mod
import scripture_api.oauth_state as oauth_state_mod
import scripture_api.rate_limit as rate_limit_mod


@pytest.fixture(autouse=True)
def _isolate_side_effects(monkeypatch, tmp_path):
    monkeypatch.setattr(events_mod, "EVENT_LOG_PATH", str(tmp_path / "events.log"))
    monkeypatch.setattr(rate_limit_mod, "_REDIS_AVAILABLE", False)
    rate_limit_mod.reset_memory_windows()
    oauth_state_mod.reset_memory_states()
    yield
    rate_limit_mod.reset_memory_windows()
    oauth_state_mod.reset_memory_states()
