import pytest

from shadow_backup import LOGGER


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(LOGGER.handlers):
        LOGGER.removeHandler(handler)
        handler.close()
