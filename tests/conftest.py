import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `lastpress` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_module_state():
	# Clear the rate limiter, change feed and service timers between tests
	from lastpress import main as lastpress_main
	from lastpress.changes import feed
	from lastpress.service import GameService

	lastpress_main._RATE_LIMIT_STORE.clear()
	lastpress_main._WS_CONNECTIONS.clear()
	feed.clear()
	lastpress_main.service = GameService()
	yield
	feed.clear()
