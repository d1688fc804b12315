"""Decide when a freshly spawned lspsd can actually serve requests.

The daemon only binds its HTTP API once the node has started, so for a
while after spawning every request is refused. We poll the `/config`
endpoint and classify what comes back:

 - connection refused/reset, timeouts and `503 Service Unavailable` mean
   "not ready yet" and are retried until the deadline;
 - any other HTTP status, a body that isn't the expected JSON object, or the
   process having exited mean it will never become ready, so we give up
   immediately instead of waiting for the timeout.
"""
from pyln.lspsd.errors import DaemonError, EarlyExit, ProbeError, ReadinessTimeout

import jsonschema  # type: ignore
import logging
import requests
import time

LIVENESS_PATH = "/config"
POLL_INTERVAL = 0.25

LSP_CONFIG_SCHEMA = {
    "type": "object",
    "required": ["pubkey", "ip_port"],
    "properties": {
        "pubkey": {"type": "string", "pattern": "^0[23][0-9a-fA-F]{64}$"},
        "ip_port": {"type": "string"},
        "token": {"type": ["string", "null"]},
    },
}

TRANSIENT_STATUS = (503,)


def probe_once(session, url, timeout):
    """Issue a single liveness request.

    Returns the decoded config on success, None if the daemon is not ready
    yet, and raises if it answered with something we don't expect.
    """
    try:
        resp = session.get(url, timeout=timeout)
    except (requests.ConnectionError, requests.Timeout) as e:
        logging.debug("%s not ready: %s", url, e)
        return None
    except requests.RequestException as e:
        raise ProbeError("GET {} failed: {}".format(url, e)) from e

    if resp.status_code in TRANSIENT_STATUS:
        logging.debug("%s not ready: HTTP %d", url, resp.status_code)
        return None
    if resp.status_code != 200:
        raise DaemonError("GET", url, resp.status_code, resp.text)

    try:
        body = resp.json()
    except ValueError as e:
        raise ProbeError("{} returned invalid JSON: {}".format(url, e)) from e
    try:
        jsonschema.validate(body, LSP_CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ProbeError("{} returned an unexpected response: {}".format(url, e.message)) from e
    return body


def wait_until_ready(base_url, timeout, interval=POLL_INTERVAL, poll=None,
                     session=None):
    """Block until `base_url` serves a valid `/config`, or fail.

    `poll`, if given, behaves like `Popen.poll`: None while the process runs,
    its exit code once it died. A dead process fails the probe right away.
    """
    url = base_url.rstrip("/") + LIVENESS_PATH
    own_session = session is None
    session = session or requests.Session()
    start_time = time.time()
    attempt = 0
    try:
        while True:
            if poll is not None:
                rc = poll()
                if rc is not None:
                    raise EarlyExit(rc)

            time_left = start_time + timeout - time.time()
            if time_left <= 0:
                raise ReadinessTimeout(base_url, timeout, "no valid response from {}".format(url))

            config = probe_once(session, url, timeout=max(min(time_left, 5), 0.1))
            if config is not None:
                logging.debug("%s ready after %d attempts (%.2fs)", base_url, attempt + 1,
                              time.time() - start_time)
                return config

            attempt += 1
            time_left = start_time + timeout - time.time()
            if time_left <= 0:
                raise ReadinessTimeout(base_url, timeout, "no valid response from {}".format(url))
            time.sleep(min(interval, time_left))
    finally:
        if own_session:
            session.close()
