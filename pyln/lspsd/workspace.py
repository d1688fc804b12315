from pyln.lspsd.errors import WorkspaceCreationFailed
from pyln.lspsd.utils import env

import logging
import os
import shutil
import tempfile


class Workspace(object):
    """The directory an lspsd instance owns.

    Layout:
      data/       the daemon's --data-dir
      lspsd.conf  the materialized configuration
      log         stdout of the daemon
      errlog      stderr of the daemon

    A temporary workspace is removed by `destroy()`, a persistent one (from
    `staticdir`) is left in place.
    """

    def __init__(self, path, temporary=True):
        self.path = path
        self.temporary = temporary
        self.data_dir = os.path.join(path, "data")
        self.config_file = os.path.join(path, "lspsd.conf")
        self.log_file = os.path.join(path, "log")
        self.errlog_file = os.path.join(path, "errlog")

    def __repr__(self):
        return "Workspace({!r}, temporary={})".format(self.path, self.temporary)

    @property
    def exists(self):
        return os.path.isdir(self.path)

    def destroy(self):
        """Remove the workspace; safe to call any number of times"""
        if not self.temporary:
            logging.debug("Leaving persistent workspace %s in place", self.path)
            return
        if not self.exists:
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logging.debug("Removed workspace %s", self.path)


def provision(root=None, staticdir=None):
    """Create a fresh workspace.

    With `staticdir` the workspace is that directory and is kept on
    teardown. Otherwise a uniquely named directory is created under `root`,
    `$TEMPDIR_ROOT` or the system temporary directory; `mkdtemp` guarantees
    that concurrent callers never receive the same path.
    """
    try:
        if staticdir is not None:
            path = os.path.abspath(str(staticdir))
            os.makedirs(path, exist_ok=True)
            ws = Workspace(path, temporary=False)
        else:
            root = root or env("TEMPDIR_ROOT")
            if root is not None:
                os.makedirs(str(root), exist_ok=True)
            path = tempfile.mkdtemp(prefix="lspsd-", dir=None if root is None else str(root))
            ws = Workspace(path, temporary=True)
        os.makedirs(ws.data_dir, exist_ok=True)
    except OSError as e:
        raise WorkspaceCreationFailed("Cannot create workspace: {}".format(e)) from e

    logging.debug("work_dir: %s", ws.path)
    return ws
