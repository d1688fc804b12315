from collections import OrderedDict
from dataclasses import dataclass, field, replace
from pyln.lspsd.errors import InvalidConfiguration
from pyln.lspsd.utils import LOCAL_IP, TIMEOUT, env, write_config
from typing import Dict, Optional
from urllib.parse import urlparse

import logging

NETWORKS = ('bitcoin', 'testnet', 'signet', 'regtest')


@dataclass(frozen=True)
class Conf:
    """The lspsd configuration parameters.

    `esplora_url` is the only required field: it points the daemon at the
    chain backend, which must already be running. The ports are reserved
    automatically unless overridden, and the workspace goes into a fresh
    temporary directory unless `staticdir` asks for a persistent one.
    """
    esplora_url: Optional[str] = None
    network: str = "regtest"
    rgs_url: Optional[str] = None
    # URL of another lspsd we pull funds and an initial channel from.
    faucet_url: Optional[str] = None
    api_port: Optional[int] = None
    lightning_port: Optional[int] = None
    listen_host: str = LOCAL_IP
    tmpdir: Optional[str] = None
    staticdir: Optional[str] = None
    executable: Optional[str] = None
    version: Optional[str] = None
    view_stdout: bool = False
    # Relaunch with fresh ports this many times if the process dies on start.
    attempts: int = 3
    keep_workspace: bool = field(default_factory=lambda: env("LSPSD_KEEP_WORKSPACE", "0") == "1")
    timeout: float = TIMEOUT
    extra_opts: Dict[str, Optional[str]] = field(default_factory=dict)

    def with_changes(self, **changes) -> "Conf":
        return replace(self, **changes)

    def validate(self):
        """Catch everything we can before a process gets spawned"""
        if self.esplora_url is None or not str(self.esplora_url).strip():
            raise InvalidConfiguration("esplora_url is required")
        url = str(self.esplora_url).strip()
        parsed = urlparse(url if "://" in url else "http://" + url)
        if not parsed.hostname:
            raise InvalidConfiguration("esplora_url {!r} has no host".format(url))
        try:
            parsed.port
        except ValueError as e:
            raise InvalidConfiguration("esplora_url {!r}: {}".format(url, e)) from e

        if self.network not in NETWORKS:
            raise InvalidConfiguration("Unknown network {!r}, expected one of {}".format(
                self.network, ", ".join(NETWORKS)))

        for name in ('api_port', 'lightning_port'):
            port = getattr(self, name)
            if port is None:
                continue
            try:
                port = int(port)
            except (TypeError, ValueError):
                raise InvalidConfiguration("{} {!r} is not a port number".format(name, port)) from None
            if not (0 < port < 65536):
                raise InvalidConfiguration("{} {} out of range".format(name, port))
        if (self.api_port is not None and self.api_port == self.lightning_port):
            raise InvalidConfiguration("api_port and lightning_port must differ")

        if self.tmpdir is not None and self.staticdir is not None:
            raise InvalidConfiguration(
                "tmpdir and staticdir cannot be enabled at same time in configuration options")
        if self.attempts < 0:
            raise InvalidConfiguration("attempts must not be negative")
        if self.timeout <= 0:
            raise InvalidConfiguration("timeout must be positive")

    def options(self, data_dir, api_port, lightning_port):
        """The daemon options, in the order they are written and passed"""
        opts = OrderedDict()
        opts['data-dir'] = data_dir
        opts['network'] = self.network
        opts['api-port'] = api_port
        opts['lightning-port'] = lightning_port
        opts['esplora-url'] = str(self.esplora_url).strip()
        if self.rgs_url:
            opts['rgs-url'] = self.rgs_url
        if self.faucet_url:
            opts['lspsd-faucet-url'] = self.faucet_url
        for k in sorted(self.extra_opts):
            opts[k] = self.extra_opts[k]
        return opts


def cmd_line_options(opts):
    args = []
    for k, v in opts.items():
        if v is None:
            args.append("--{}".format(k))
        elif isinstance(v, list):
            for i in v:
                args.append("--{}={}".format(k, i))
        else:
            args.append("--{}={}".format(k, v))
    return args


def materialize(conf, workspace, api_port, lightning_port):
    """Write the configuration of `conf` into `workspace`.

    Identical inputs produce a byte-identical file. Returns the path of the
    config file.
    """
    conf.validate()
    opts = conf.options(workspace.data_dir, api_port, lightning_port)
    write_config(workspace.config_file, opts)
    logging.debug("Wrote %s: %s", workspace.config_file, dict(opts))
    return workspace.config_file
