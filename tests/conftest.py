import logging

import pytest

from bi_sync import SyncEngine, SyncLock


@pytest.fixture
def logger():
    # outside the "bi_sync" hierarchy so caplog still sees records after setup_logger ran
    log = logging.getLogger("tests.bi_sync")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def lock():
    lk = SyncLock(cooldown_sec=0)
    yield lk
    lk.cancel_pending()


@pytest.fixture
def engine(lock, logger):
    return SyncEngine(lock, logger)
