from concurrent import futures
from pyln.lspsd.daemon import LspsdFactory
from pyln.lspsd.download import exe_path
from pyln.lspsd.utils import env, TEST_DEBUG
from typing import Dict

import logging
import os
import pytest  # type: ignore
import shutil
import sys
import tempfile


# A dict in which we count how often a particular test has run so far. Used to
# give each attempt its own numbered directory, and avoid clashes.
__attempts: Dict[str, int] = {}


@pytest.fixture(scope="session")
def test_base_dir():
    d = os.getenv("TEST_DIR", "/tmp")

    directory = tempfile.mkdtemp(prefix='lspsdtests-', dir=d)
    print("Running tests in {}".format(directory))

    yield directory

    # Now check if any test directory is left because the corresponding test
    # failed. If there are no such tests we can clean up the root test
    # directory.
    contents = [d for d in os.listdir(directory) if os.path.isdir(os.path.join(directory, d)) and d.startswith('test_')]
    if contents == []:
        shutil.rmtree(directory)
    else:
        print("Leaving base_dir {} intact, it still has test sub-directories with failure details: {}".format(
            directory, contents
        ))


@pytest.fixture(autouse=True)
def setup_logging():
    """Enable logging before a test, and remove all handlers afterwards.

    This "fixes" the issue with pytest swapping out sys.stdout and sys.stderr
    in order to capture the output, but then doesn't wait for the handlers to
    terminate before closing the buffers. It just iterates through all
    loggers, and removes any handlers that might be pointing at sys.stdout or
    sys.stderr.

    """
    if TEST_DEBUG:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stdout)

    yield

    loggers = [logging.getLogger()] + list(logging.Logger.manager.loggerDict.values())
    for logger in loggers:
        handlers = getattr(logger, 'handlers', [])
        for handler in handlers:
            logger.removeHandler(handler)


@pytest.fixture
def directory(request, test_base_dir, test_name):
    """Return a per-test specific directory.

    This makes a unique test-directory even if a test is rerun multiple times.

    """
    global __attempts
    # Auto set value if it isn't in the dict yet
    __attempts[test_name] = __attempts.get(test_name, 0) + 1
    directory = os.path.join(test_base_dir, "{}_{}".format(test_name, __attempts[test_name]))
    request.node.has_errors = False

    if not os.path.exists(directory):
        os.makedirs(directory)

    yield directory

    # This uses the status set in conftest.pytest_runtest_makereport to
    # determine whether we succeeded or failed. Outcome can be None if the
    # failure occurs during the setup phase, hence the use to getattr instead
    # of accessing it directly.
    rep_call = getattr(request.node, 'rep_call', None)
    outcome = 'passed' if rep_call is None else rep_call.outcome
    failed = not outcome or request.node.has_errors or outcome != 'passed'

    if not failed:
        shutil.rmtree(directory, ignore_errors=True)
    else:
        logging.debug("Test execution failed, leaving the test directory {} intact.".format(directory))


@pytest.fixture
def test_name(request):
    yield request.function.__name__


@pytest.fixture(scope="session")
def esplora_url():
    """The chain backend the daemons are pointed at, from `ESPLORA_URL`"""
    url = env("ESPLORA_URL")
    if url is None:
        pytest.skip("ESPLORA_URL is not set, no chain backend to run lspsd against")
    return url


@pytest.fixture(scope="session")
def lspsd_exe():
    return exe_path()


class TeardownErrors(object):
    def __init__(self):
        self.errors = []

    def add_error(self, msg):
        self.errors.append(msg)

    def __str__(self):
        return "\n".join(["\nTeardown errors:"] + [" - {}".format(e) for e in self.errors])

    def has_errors(self):
        return len(self.errors) > 0


@pytest.fixture
def teardown_checks(request):
    """A simple fixture to collect errors during teardown.

    We need to collect the errors and raise them as the very last step in the
    fixture tree, otherwise some fixtures may not be cleaned up
    correctly. Require this fixture in all other fixtures that need to either
    cleanup before reporting an error or want to add an error that is to be
    reported.

    """
    errors = TeardownErrors()
    yield errors

    if errors.has_errors():
        # Format a nice list of everything that went wrong and raise an exception
        request.node.has_errors = True
        raise ValueError(str(errors))


@pytest.fixture
def executor(teardown_checks):
    ex = futures.ThreadPoolExecutor(max_workers=20)
    yield ex
    ex.shutdown(wait=False)


@pytest.fixture
def lspsd_factory(directory, test_name, executor, esplora_url, lspsd_exe, teardown_checks):
    lf = LspsdFactory(
        test_name,
        executor,
        directory=directory,
        esplora_url=esplora_url,
        executable=lspsd_exe,
    )

    yield lf

    for e in lf.killall():
        teardown_checks.add_error(e)

    leftover = [lspsd.workdir for lspsd in lf.instances
                if lspsd.workspace is not None and lspsd.workspace.temporary
                and not lspsd.conf.keep_workspace and os.path.exists(lspsd.workdir)]
    if leftover:
        teardown_checks.add_error("workspaces left behind: {}".format(", ".join(leftover)))


@pytest.fixture
def lspsd(lspsd_factory):
    yield lspsd_factory.get_lspsd()
