from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def _no_real_backends():
    """Prevent tests from discovering a locally installed claude or codex.

    Tests that want to exercise discovery patch shutil.which (or the
    locator) explicitly.
    """
    with patch("agent_bridge.locator.shutil.which", return_value=None):
        yield
