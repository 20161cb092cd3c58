import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import safeflow`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: large-program validation tests (skipped unless SAFEFLOW_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('SAFEFLOW_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SAFEFLOW_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    """Every test starts from default configuration with no SAFEFLOW_* overrides."""
    for name in list(os.environ):
        if name.startswith('SAFEFLOW_') and name != 'SAFEFLOW_RUN_SLOW':
            monkeypatch.delenv(name)

    from safeflow.config import ConfigManager
    ConfigManager().reset()
    yield
    ConfigManager().reset()
