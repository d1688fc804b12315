class LspsdError(Exception):
    """Base class for everything that can go wrong while managing an lspsd"""


class UnsupportedPlatform(LspsdError):
    def __init__(self, platform: str):
        super().__init__("No lspsd release archive for platform {}".format(platform))
        self.platform = platform


class DownloadFailed(LspsdError):
    def __init__(self, url: str, reason):
        super().__init__("Could not download {}: {}".format(url, reason))
        self.url = url
        self.reason = reason


class IntegrityCheckFailed(LspsdError):
    def __init__(self, archive: str, expected, actual: str):
        if expected is None:
            msg = "Cannot verify {}: no digest (sha256 {})".format(archive, actual)
        else:
            msg = "Checksum mismatch for {}: expected {}, got {}".format(archive, expected, actual)
        super().__init__(msg)
        self.archive = archive
        self.expected = expected
        self.actual = actual


class ExtractionFailed(LspsdError):
    pass


class WorkspaceCreationFailed(LspsdError):
    pass


class InvalidConfiguration(LspsdError, ValueError):
    pass


class SpawnFailed(LspsdError):
    pass


class EarlyExit(SpawnFailed):
    """The process died before it became ready to serve requests"""

    def __init__(self, returncode, errlog=None):
        msg = "The lspsd process terminated early with exit code {}".format(returncode)
        if errlog:
            msg += ": {}".format(errlog)
        super().__init__(msg)
        self.returncode = returncode
        self.errlog = errlog


class ProbeError(LspsdError):
    pass


class ReadinessTimeout(ProbeError, TimeoutError):
    def __init__(self, url: str, timeout: float, last_error=None):
        super().__init__(
            "{} not ready after {} seconds (last error: {})".format(url, timeout, last_error)
        )
        self.url = url
        self.timeout = timeout
        self.last_error = last_error


class RequestFailed(LspsdError):
    def __init__(self, method: str, url: str, reason):
        super().__init__("{} {} failed: {}".format(method, url, reason))
        self.method = method
        self.url = url
        self.reason = reason


class DaemonError(LspsdError):
    """The daemon answered, but with an error status"""

    def __init__(self, method: str, url: str, status: int, body: str):
        super().__init__(
            "{} {} returned {}: {}".format(method, url, status, body)
        )
        self.method = method
        self.url = url
        self.status = status
        self.body = body
