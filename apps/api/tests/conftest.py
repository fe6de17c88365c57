import pytest

from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def isolate_app_state():
    """Rate limits off and no leaked dependency overrides between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.dependency_overrides.clear()
    app.state.disable_rate_limits = previous

