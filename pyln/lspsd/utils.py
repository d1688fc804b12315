import ephemeral_port_reserve  # type: ignore
import logging
import os
import re
import subprocess
import sys
import threading
import time


def env(name, default=None):
    """Access to environment variables

    Allows access to environment variables, falling back to config.vars (a
    `KEY=value` file in the current directory, as written by CI setups), and
    finally falling back to a default value.

    """
    fname = 'config.vars'
    if os.path.exists(fname):
        with open(fname, 'r') as f:
            lines = f.readlines()
        config = dict([(line.rstrip().split('=', 1)) for line in lines if '=' in line])
    else:
        config = {}

    if name in os.environ:
        return os.environ[name]
    elif name in config:
        return config[name]
    else:
        return default


TEST_DEBUG = env("TEST_DEBUG", "0") == "1"
SLOW_MACHINE = env("SLOW_MACHINE", "0") == "1"
TIMEOUT = int(env("TIMEOUT", 180 if SLOW_MACHINE else 60))
LSPSD_VERSION = env("LSPSD_VERSION", "0.1.5")
DOWNLOAD_ENDPOINT = env("LSPSD_DOWNLOAD_ENDPOINT",
                        "https://github.com/johncantrell97/lspsd/releases/download")
LOCAL_IP = "127.0.0.1"


def wait_for(success, timeout=TIMEOUT):
    start_time = time.time()
    interval = 0.25
    while not success():
        time_left = start_time + timeout - time.time()
        if time_left <= 0:
            raise ValueError("Timeout while waiting for {}".format(success))
        time.sleep(min(interval, time_left))
        interval *= 2
        if interval > 5:
            interval = 5


def write_config(filename, opts):
    """Write `opts` as `key=value` lines, in insertion order.

    Flags (value `None`) are written as a bare key, list values repeat the
    key once per entry.
    """
    with open(filename, 'w') as f:
        for k, v in opts.items():
            if v is None:
                f.write("{}\n".format(k))
            elif isinstance(v, list):
                for i in v:
                    f.write("{}={}\n".format(k, i))
            else:
                f.write("{}={}\n".format(k, v))


def read_config(filename):
    """Inverse of `write_config`, returns the options as an ordered dict"""
    opts = {}
    with open(filename, 'r') as f:
        for line in f:
            line = line.rstrip('\n')
            if not line or line.startswith('#'):
                continue
            if '=' not in line:
                opts[line] = None
                continue
            k, v = line.split('=', 1)
            if k in opts:
                prev = opts[k]
                opts[k] = (prev if isinstance(prev, list) else [prev]) + [v]
            else:
                opts[k] = v
    return opts


unused_port_lock = threading.Lock()
unused_port_set = set()


def reserve_unused_port():
    """Get an unused port: avoids handing out the same port unless it's been
    returned"""
    with unused_port_lock:
        while True:
            port = ephemeral_port_reserve.reserve()
            if port not in unused_port_set:
                break
        unused_port_set.add(port)

    return port


def drop_unused_port(port):
    with unused_port_lock:
        unused_port_set.discard(port)


class TailableProc(object):
    """A monitorable process that we can start, stop and tail.

    Stdout and stderr of the process are redirected into `log` and `errlog`
    inside `outputDir`, which lets us search the output while the process
    is running and keeps it around for post-mortem inspection.
    """

    def __init__(self, outputDir, verbose=True):
        self.logs = []
        self.env = os.environ.copy()
        self.proc = None
        self.outputDir = outputDir
        if not os.path.exists(outputDir):
            os.makedirs(outputDir)
        self.stdout_filename = os.path.join(outputDir, "log")
        self.stderr_filename = os.path.join(outputDir, "errlog")
        self.stdout_write = None
        self.stderr_write = None
        self.stdout_read = None
        self.stderr_read = None
        self.logsearch_start = 0
        self.err_logs = []
        self.prefix = ""

        # Should we be logging lines we read from stdout?
        self.verbose = verbose

    def _open_logs(self):
        # Truncate on every (re)start so a retried launch doesn't see the
        # output of its predecessor.
        self._close_logs()
        self.stdout_write = open(self.stdout_filename, "wt")
        self.stderr_write = open(self.stderr_filename, "wt")
        self.stdout_read = open(self.stdout_filename, "rt")
        self.stderr_read = open(self.stderr_filename, "rt")
        self.logs = []
        self.err_logs = []
        self.logsearch_start = 0

    def _close_logs(self):
        for f in (self.stdout_write, self.stderr_write,
                  self.stdout_read, self.stderr_read):
            if f is not None and not f.closed:
                f.close()

    @property
    def cmd_line(self):
        raise NotImplementedError

    @property
    def is_running(self):
        return self.proc is not None and self.proc.poll() is None

    @property
    def pid(self):
        return None if self.proc is None else self.proc.pid

    def start(self, stdin=None):
        """Start the underlying process and start monitoring it.
        """
        cmd_line = self.cmd_line
        logging.debug("Starting '%s'", " ".join(cmd_line))
        self._open_logs()
        self.proc = subprocess.Popen(cmd_line,
                                     stdin=stdin,
                                     stdout=self.stdout_write,
                                     stderr=self.stderr_write,
                                     env=self.env)

    def stop(self, timeout=10):
        """Terminate the process, escalating to SIGKILL if it doesn't exit
        within `timeout` seconds. Returns the exit code."""
        if self.proc is None:
            return None

        if self.proc.poll() is None:
            self.proc.terminate()
            try:
                self.proc.wait(timeout)
            except subprocess.TimeoutExpired:
                logging.warning("%s did not exit after SIGTERM, killing it", self.prefix)
                self.proc.kill()

        self.proc.wait()
        self.logs_catchup()
        self._close_logs()
        return self.proc.returncode

    def kill(self):
        """Kill process without giving it warning."""
        if self.proc is None:
            return None
        if self.proc.poll() is None:
            self.proc.kill()
        self.proc.wait()
        self._close_logs()
        return self.proc.returncode

    def logs_catchup(self):
        """Save the latest stdout / stderr contents; return true if we got anything.
        """
        if self.stdout_read is None or self.stdout_read.closed:
            return False
        new_stdout = self.stdout_read.readlines()
        if self.verbose:
            for line in new_stdout:
                sys.stdout.write("{}: {}".format(self.prefix, line))
        self.logs += [l.rstrip() for l in new_stdout]
        new_stderr = self.stderr_read.readlines()
        if self.verbose:
            for line in new_stderr:
                sys.stderr.write("{}-stderr: {}".format(self.prefix, line))
        self.err_logs += [l.rstrip() for l in new_stderr]
        return len(new_stdout) > 0 or len(new_stderr) > 0

    def is_in_log(self, regex, start=0):
        """Look for `regex` in the logs."""

        self.logs_catchup()
        ex = re.compile(regex)
        for l in self.logs[start:]:
            if ex.search(l):
                logging.debug("Found '%s' in logs", regex)
                return l

        logging.debug("Did not find '%s' in logs", regex)
        return None

    def is_in_stderr(self, regex):
        """Look for `regex` in stderr."""

        self.logs_catchup()
        ex = re.compile(regex)
        for l in self.err_logs:
            if ex.search(l):
                logging.debug("Found '%s' in stderr", regex)
                return l

        logging.debug("Did not find '%s' in stderr", regex)
        return None

    def wait_for_logs(self, regexs, timeout=TIMEOUT):
        """Look for `regexs` in the logs.

        We look for each regex in `regexs`, starting from `logsearch_start`
        which normally is the position of the last found entry of a previous
        wait-for logs call. The ordering inside `regexs` doesn't matter.

        We fail if the timeout is exceeded. If timeout is None, no time-out
        is applied.
        """
        logging.debug("Waiting for {} in the logs".format(regexs))
        exs = [re.compile(r) for r in regexs]
        start_time = time.time()
        while True:
            if self.logsearch_start >= len(self.logs):
                if not self.logs_catchup():
                    time.sleep(0.25)

                if timeout is not None and time.time() > start_time + timeout:
                    raise TimeoutError('Unable to find "{}" in logs.'.format(exs))
                continue

            line = self.logs[self.logsearch_start]
            self.logsearch_start += 1
            for r in exs.copy():
                if r.search(line):
                    logging.debug("Found '%s' in logs", r)
                    exs.remove(r)
                    if len(exs) == 0:
                        return line
                    # Don't match same line with different regexs!
                    break

    def wait_for_log(self, regex, timeout=TIMEOUT):
        """Look for `regex` in the logs.

        Convenience wrapper for the common case of only seeking a single entry.
        """
        return self.wait_for_logs([regex], timeout)
