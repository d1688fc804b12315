from dataclasses import dataclass
from enum import Enum
from pyln.lspsd.client import LspConfig, LspsClient, _from_dict
from pyln.lspsd.config import Conf, cmd_line_options, materialize
from pyln.lspsd.download import exe_path, resolve
from pyln.lspsd.errors import EarlyExit, SpawnFailed
from pyln.lspsd.probe import wait_until_ready
from pyln.lspsd.utils import (
    TIMEOUT, TailableProc, drop_unused_port, env, read_config,
    reserve_unused_port,
)
from pyln.lspsd.workspace import provision
from typing import Optional, Tuple

import logging
import signal
import threading


class ReadinessState(Enum):
    SPAWNING = "spawning"
    PROBING = "probing"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ConnectParams:
    """Contains all the information to connect to a running lspsd"""
    api_socket: Tuple[str, int]
    lightning_socket: Tuple[str, int]

    @property
    def api_url(self):
        return "http://{}:{}".format(*self.api_socket)

    @property
    def lightning_addr(self):
        return "{}:{}".format(*self.lightning_socket)


class LspsdProcess(TailableProc):
    """The `lspsd` OS process, launched from a materialized config file"""

    def __init__(self, executable, config_file, workspace, verbose=False, prefix='lspsd'):
        TailableProc.__init__(self, workspace.path, verbose=verbose)
        self.executable = executable
        self.config_file = config_file
        self.opts = read_config(config_file)
        self.prefix = prefix

    @property
    def cmd_line(self):
        return [self.executable] + cmd_line_options(self.opts)

    def start(self, stdin=None):
        try:
            TailableProc.start(self, stdin)
        except OSError as e:
            self._close_logs()
            raise SpawnFailed("Error while executing {}: {}".format(self.executable, e)) from e
        logging.info("%s spawned with pid %d", self.prefix, self.proc.pid)


def spawn(executable, config_file, workspace, verbose=False, prefix='lspsd', env=None):
    """Launch `executable` with the options of `config_file`, inside `workspace`

    Raises `SpawnFailed` if the process cannot be created.
    """
    proc = LspsdProcess(executable, config_file, workspace, verbose=verbose, prefix=prefix)
    if env:
        proc.env.update(env)
    proc.start()
    return proc


class LspsD(object):
    """A managed lspsd instance.

    `start()` resolves the executable, provisions a workspace, writes the
    configuration, spawns the process and waits until its API answers. Any
    failure along the way kills the process and removes the workspace before
    the error is raised. `stop()` is idempotent and safe in every state, and
    the instance is a context manager that calls it on exit:

        with LspsD(Conf(esplora_url=url)) as lspsd:
            lspsd.client.get_funding_address()
    """

    def __init__(self, conf: Optional[Conf] = None, executable=None, node_id=0, env=None):
        if conf is None:
            conf = Conf(esplora_url=_default_esplora_url())
        # Refuse bad configurations before touching the filesystem.
        conf.validate()
        self.conf = conf
        self.executable = executable or conf.executable
        self.node_id = node_id
        self.prefix = 'lspsd-{}'.format(node_id)
        self.extra_env = env or {}

        self.state: Optional[ReadinessState] = None
        self.failure: Optional[BaseException] = None
        self.workspace = None
        self.daemon: Optional[LspsdProcess] = None
        self.params: Optional[ConnectParams] = None
        self.client: Optional[LspsClient] = None
        self.lsp_config: Optional[LspConfig] = None
        self.rc = None
        self._reserved_ports = []
        self._released = False

    def __repr__(self):
        return "LspsD({}, state={})".format(self.prefix, self.state)

    def __enter__(self):
        if self.state is None:
            self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()

    @classmethod
    def from_downloaded(cls, conf: Optional[Conf] = None, **kwargs):
        """Create an LspsD for the downloaded release of `conf.version`"""
        conf = conf or Conf(esplora_url=_default_esplora_url())
        return cls(conf, executable=exe_path(conf.version), **kwargs)

    @property
    def api_url(self):
        """Returns the API URL including the schema eg. http://127.0.0.1:44842"""
        return self.params.api_url

    @property
    def workdir(self):
        return None if self.workspace is None else self.workspace.path

    @property
    def is_running(self):
        return self.daemon is not None and self.daemon.is_running

    @property
    def pid(self):
        return None if self.daemon is None else self.daemon.pid

    def start(self):
        if self.state is not None:
            raise RuntimeError("{} has already been started ({})".format(self.prefix, self.state.value))

        self.state = ReadinessState.SPAWNING
        try:
            if self.executable is not None:
                exe = resolve(explicit_path=self.executable)
            else:
                exe = exe_path(self.conf.version)
            self._provision()
            self._launch(exe)
        except BaseException as e:
            # This includes KeyboardInterrupt and pytest's timeout: a probe
            # that got cancelled must not leave the process behind.
            self.failure = e
            self.state = ReadinessState.FAILED
            logging.error("%s failed to start: %s", self.prefix, e)
            self._release(kill=True)
            raise

        self.state = ReadinessState.READY
        logging.info("%s ready at %s", self.prefix, self.api_url)
        return self

    def _provision(self):
        self.workspace = provision(root=self.conf.tmpdir, staticdir=self.conf.staticdir)

    def _reserve(self, port):
        if port is not None:
            return port
        port = reserve_unused_port()
        self._reserved_ports.append(port)
        return port

    def _drop_ports(self):
        for p in self._reserved_ports:
            drop_unused_port(p)
        self._reserved_ports = []

    def _launch(self, exe):
        attempts = self.conf.attempts
        while True:
            api_port = self._reserve(self.conf.api_port)
            lightning_port = self._reserve(self.conf.lightning_port)
            config_file = materialize(self.conf, self.workspace, api_port, lightning_port)
            self.params = ConnectParams(
                api_socket=(self.conf.listen_host, api_port),
                lightning_socket=(self.conf.listen_host, lightning_port),
            )

            self.state = ReadinessState.SPAWNING
            self.daemon = spawn(exe, config_file, self.workspace, verbose=self.conf.view_stdout,
                                prefix=self.prefix, env=self.extra_env)

            self.state = ReadinessState.PROBING
            try:
                config = wait_until_ready(self.params.api_url, self.conf.timeout,
                                          poll=self.daemon.proc.poll)
            except EarlyExit as e:
                self.daemon.logs_catchup()
                self.daemon.kill()
                errlog = "\n".join(self.daemon.err_logs[-20:])
                if attempts > 0:
                    logging.warning("early exit with: %s. Trying to launch again (%d attempts "
                                    "remaining), maybe some other process used our available port",
                                    e.returncode, attempts)
                    attempts -= 1
                    self._drop_ports()
                    # Each attempt starts from an empty data directory.
                    if self.workspace.temporary:
                        self.workspace.destroy()
                        self._provision()
                    continue
                raise EarlyExit(e.returncode, errlog) from None

            self.lsp_config = _from_dict(LspConfig, config)
            self.client = LspsClient(self.params.api_url)
            return

    def _release(self, kill=False, timeout=10):
        """Stop the process, if any, and reclaim everything we hold"""
        if self._released:
            return
        self._released = True

        try:
            if self.daemon is not None and self.daemon.proc is not None:
                self.rc = self.daemon.kill() if kill else self.daemon.stop(timeout)
        finally:
            if self.client is not None:
                self.client.close()
            self._drop_ports()
            if self.workspace is not None:
                if self.conf.keep_workspace:
                    logging.info("%s: keeping workspace %s", self.prefix, self.workspace.path)
                else:
                    self.workspace.destroy()

    def stop(self, timeout=10):
        """Attempt a clean shutdown, killing the process if it hangs.

        Returns the exit code of the process. Calling it again, or on an
        instance that failed to start, does nothing.
        """
        if self._released:
            return self.rc
        self._release(timeout=timeout)
        if self.state != ReadinessState.FAILED:
            self.state = ReadinessState.STOPPED
        logging.info("%s stopped (rc=%s)", self.prefix, self.rc)
        return self.rc

    def kill(self):
        """Kill the process without warning and reclaim the workspace"""
        if self._released:
            return self.rc
        self._release(kill=True)
        if self.state != ReadinessState.FAILED:
            self.state = ReadinessState.STOPPED
        return self.rc

    terminate = stop

    def is_in_log(self, regex, start=0):
        return self.daemon.is_in_log(regex, start)

    def wait_for_log(self, regex, timeout=TIMEOUT):
        return self.daemon.wait_for_log(regex, timeout)

    def wait_for_logs(self, regexs, timeout=TIMEOUT):
        return self.daemon.wait_for_logs(regexs, timeout)


def _default_esplora_url():
    return env("ESPLORA_URL")


class LspsdFactory(object):
    """A factory to setup and start `lspsd` daemons.
    """
    def __init__(self, testname, executor, directory, esplora_url, executable=None):
        self.testname = testname
        self.next_id = 1
        self.instances = []
        self.executor = executor
        self.directory = directory
        self.esplora_url = esplora_url
        self.executable = executable
        self.lock = threading.Lock()

    def get_node_id(self):
        """Generate a unique numeric ID for an lspsd instance
        """
        with self.lock:
            node_id = self.next_id
            self.next_id += 1
            return node_id

    def get_lspsd(self, node_id=None, start=True, may_fail=False, env=None, **conf_opts):
        node_id = self.get_node_id() if not node_id else node_id
        conf_opts.setdefault('esplora_url', self.esplora_url)
        conf_opts.setdefault('tmpdir', self.directory)
        if conf_opts.get('staticdir') is not None:
            conf_opts['tmpdir'] = None

        lspsd = LspsD(Conf(**conf_opts), executable=self.executable,
                      node_id=node_id, env=env)
        lspsd.may_fail = may_fail
        with self.lock:
            self.instances.append(lspsd)

        if start:
            lspsd.start()
        return lspsd

    def get_lspsds(self, num, opts=None):
        """Start a number of lspsd instances in parallel, each with its own options
        """
        if opts is None:
            opts = [{} for _ in range(num)]
        elif isinstance(opts, dict):
            opts = [opts] * num

        assert len(opts) == num

        jobs = []
        for i in range(num):
            jobs.append(self.executor.submit(
                self.get_lspsd, node_id=self.get_node_id(), **opts[i]
            ))

        return [j.result() for j in jobs]

    def killall(self):
        """Stop everything we started, returns the error messages of the
        instances that did not exit cleanly"""
        err_msgs = []
        for lspsd in self.instances:
            try:
                rc = lspsd.stop()
            except Exception as e:
                err_msgs.append("{} failed to stop: {}".format(lspsd.prefix, e))
                continue

            if lspsd.may_fail:
                continue
            if lspsd.failure is not None:
                err_msgs.append("{} failed to start: {}".format(lspsd.prefix, lspsd.failure))
            elif rc not in (None, 0, -signal.SIGTERM):
                errlog = "\n".join(lspsd.daemon.err_logs) if lspsd.daemon else ""
                err_msgs.append("{} exited with return code {}: {}".format(
                    lspsd.prefix, rc, errlog))
        return err_msgs
