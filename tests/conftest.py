from fake_lspsd import FakeLspsd, write_script
from pyln.lspsd.fixtures import *  # noqa: F401,F403

import os
import pytest
import sys

FAKE_LSPSD = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_lspsd.py")


# This function is based upon the example of how to
# "[make] test result information available in fixtures" at:
#  https://pytest.org/latest/example/simple.html#making-test-result-information-available-in-fixtures
# and:
#  https://github.com/pytest-dev/pytest/issues/288
@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    # execute all other hooks to obtain the report object
    outcome = yield
    rep = outcome.get_result()

    # set a report attribute for each phase of a call, which can
    # be "setup", "call", "teardown"

    setattr(item, "rep_" + rep.when, rep)


@pytest.fixture(scope="session")
def lspsd_exe(tmp_path_factory):
    """An executable that behaves like `lspsd`, backed by fake_lspsd.py"""
    path = tmp_path_factory.mktemp("bin") / "lspsd"
    return write_script(path, 'exec "{}" "{}" "$@"'.format(sys.executable, FAKE_LSPSD))


@pytest.fixture(scope="session")
def esplora_url():
    # The fake daemon never talks to its chain backend.
    return "http://127.0.0.1:3002"


@pytest.fixture
def fake_lspsd():
    fake = FakeLspsd()
    fake.start()
    yield fake
    fake.stop()
