from dataclasses import dataclass, fields
from pyln.client import Millisatoshi
from pyln.lspsd.errors import DaemonError, RequestFailed
from typing import List, Optional

import logging
import requests


def _from_dict(cls, d):
    """Build dataclass `cls` from a JSON object, ignoring unknown keys"""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in names})


@dataclass
class LspConfig:
    pubkey: str
    ip_port: str
    token: Optional[str] = None

    @property
    def connect_string(self):
        """`pubkey@host:port`, as accepted by `lightning-cli connect`"""
        return "{}@{}".format(self.pubkey, self.ip_port)


@dataclass
class FundingAddress:
    address: str


@dataclass
class CompactChannel:
    channel_id: str
    counterparty_node_id: str
    channel_value_sats: int
    user_channel_id: int
    outbound_capacity_msat: Millisatoshi
    inbound_capacity_msat: Millisatoshi
    is_channel_ready: bool
    is_usable: bool

    @classmethod
    def from_json(cls, d):
        c = _from_dict(cls, d)
        c.outbound_capacity_msat = Millisatoshi(c.outbound_capacity_msat)
        c.inbound_capacity_msat = Millisatoshi(c.inbound_capacity_msat)
        return c


@dataclass
class Balance:
    total_onchain_balance_sats: int
    spendable_onchain_balance_sats: int


@dataclass
class Payment:
    status: str
    preimage: Optional[str] = None


class LspsClient(object):
    """Client for the lspsd HTTP control API.

    The client only knows the base URL; it does not own the process behind
    it. Transport failures raise `RequestFailed`, error statuses returned by
    the daemon raise `DaemonError`.
    """

    TIMEOUT = 60

    def __init__(self, base_url, timeout=None, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or self.TIMEOUT
        self.session = session or requests.Session()

    def __repr__(self):
        return "LspsClient({!r})".format(self.base_url)

    def close(self):
        self.session.close()

    def call(self, method, path, payload=None):
        url = "{}{}".format(self.base_url, path)
        logging.debug("%s %s %s", method, url, payload if payload is not None else "")
        try:
            resp = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RequestFailed(method, url, e) from e

        if not 200 <= resp.status_code < 300:
            raise DaemonError(method, url, resp.status_code, resp.text)

        try:
            res = resp.json()
        except ValueError as e:
            raise RequestFailed(method, url, "invalid JSON in response: {}".format(e)) from e
        logging.debug("Result for %s %s: %s", method, path, res)
        return res

    def get_lsps_config(self) -> LspConfig:
        return _from_dict(LspConfig, self.call("GET", "/config"))

    def get_funding_address(self) -> FundingAddress:
        return _from_dict(FundingAddress, self.call("GET", "/funding-address"))

    def faucet(self, address: str) -> str:
        """Have the daemon send 1 BTC to `address`, returns the txid"""
        return self.call("POST", "/faucet", {"address": address})

    def open_channel(self, pubkey: str, ip_port: str, funding_sats: int,
                     push_sats: int = 0) -> int:
        """Open a channel from the daemon to `pubkey@ip_port`.

        Returns the `user_channel_id` of the new channel.
        """
        res = self.call("POST", "/channels", {
            "pubkey": pubkey,
            "ip_port": ip_port,
            "funding_sats": funding_sats,
            "push_sats": push_sats,
        })
        return res["user_channel_id"]

    def list_channels(self) -> List[CompactChannel]:
        res = self.call("GET", "/channels")
        return [CompactChannel.from_json(c) for c in res["channels"]]

    def pay_invoice(self, invoice: str) -> str:
        res = self.call("POST", "/pay-invoice", {"invoice": invoice})
        return res.get("payment_hash", res.get("payment_id"))

    def get_invoice(self, amount_sats: int, description: str = "",
                    expiry_secs: int = 3600) -> str:
        res = self.call("POST", "/get-invoice", {
            "amount_sats": amount_sats,
            "description": description,
            "expiry_secs": expiry_secs,
        })
        return res["invoice"]

    def sync(self) -> bool:
        """Sync the daemon's wallets with the chain backend"""
        return self.call("POST", "/sync").get("synced", False)

    def get_balance(self) -> Balance:
        return _from_dict(Balance, self.call("GET", "/balance"))

    def get_payment(self, payment_hash: str) -> Payment:
        return _from_dict(Payment, self.call("GET", "/get-payment/{}".format(payment_hash)))
